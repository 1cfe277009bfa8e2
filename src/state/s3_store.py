from __future__ import annotations

import json
import logging
from typing import Optional, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from .models import SubscriptionState


logger = logging.getLogger(__name__)


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def _dump_state_json(state: SubscriptionState) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(
        state.model_dump(mode="json"), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


def _load_state_json(data: bytes) -> SubscriptionState:
    return SubscriptionState.model_validate(json.loads(data.decode("utf-8")))


class OptimisticLockError(Exception):
    """Raised when an ETag precondition fails during a conditional write."""


class SubscriptionStore:
    """
    S3-backed persistence for `SubscriptionState`, one encrypted object per subscription.

    Usage
    - Object key is `{prefix}{subscription_id}.json`.
    - `read(subscription_id)` returns `(state, etag)`, or `(None, None)` when the
      subscription has no record (unknown or deleted subscription).
    - `write(state, if_match=None)` encrypts and stores the record and returns
      the new ETag. With `if_match`, the write is a compare-and-swap against
      the ETag seen at read time and raises `OptimisticLockError` on conflict.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str = "subscriptions/",
        fernet_key: str | bytes,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._prefix = prefix
        self._fernet = _to_fernet(fernet_key)

    def key_for(self, subscription_id: str) -> str:
        return f"{self._prefix}{subscription_id}.json"

    # -------- Core operations --------
    def read(self, subscription_id: str) -> Tuple[Optional[SubscriptionState], Optional[str]]:
        """Read and decrypt one subscription record.

        Raises:
        - ValueError if decryption fails or content is not a valid record.
        - botocore.exceptions.ClientError for other S3 issues.
        """
        key = self.key_for(subscription_id)
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return (None, None)
            raise

        body = resp["Body"].read()
        etag = resp.get("ETag")
        try:
            decrypted = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise ValueError(f"Failed to decrypt record for {subscription_id}: invalid Fernet token") from ex

        try:
            state = _load_state_json(decrypted)
        except ValueError as ex:
            raise ValueError(f"Failed to parse record for {subscription_id}") from ex

        if state.subscription_id != subscription_id:
            raise ValueError(f"Record at {key} belongs to {state.subscription_id}")
        return (state, etag)

    def write(self, state: SubscriptionState, *, if_match: Optional[str] = None) -> str:
        """Encrypt and write a record; returns the new ETag.

        S3 PutObject has no If-Match, so the conditional path uploads to a
        temporary key and COPYs it over the destination with an If-Match
        precondition on the destination's current ETag.
        """
        key = self.key_for(state.subscription_id)
        ciphertext = self._fernet.encrypt(_dump_state_json(state))

        if if_match is None:
            resp = self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=ciphertext,
                ContentType="application/octet-stream",
            )
            return str(resp.get("ETag"))

        temp_key = f"{key}.tmp-{uuid4().hex}"
        self._s3.put_object(
            Bucket=self._bucket,
            Key=temp_key,
            Body=ciphertext,
            ContentType="application/octet-stream",
        )

        try:
            resp = self._s3.copy_object(
                Bucket=self._bucket,
                Key=key,
                CopySource={"Bucket": self._bucket, "Key": temp_key},
                IfMatch=if_match,
                MetadataDirective="COPY",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "412"):
                raise OptimisticLockError(
                    f"ETag mismatch for s3://{self._bucket}/{key}"
                ) from e
            raise
        finally:
            try:
                self._s3.delete_object(Bucket=self._bucket, Key=temp_key)
            except ClientError as e:
                logger.warning("Could not remove temporary state object %s: %s", temp_key, e)

        return str(resp.get("CopyObjectResult", {}).get("ETag"))


__all__ = ["SubscriptionStore", "OptimisticLockError"]
