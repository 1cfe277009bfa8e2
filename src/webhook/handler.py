from __future__ import annotations

import base64
import hmac
import logging
from typing import Any, Callable, Dict, Optional

from common.config import Settings, configure_logging
from common.errors import ValidationError
from sync.runner import SyncContext, sync_subscription
from webhook.models import NotificationBatch, decode_batch


logger = logging.getLogger(__name__)

VALIDATION_TOKEN_PARAM = "validationToken"


def _response(status: int, body: str = "", content_type: Optional[str] = None) -> Dict[str, Any]:
    resp: Dict[str, Any] = {"statusCode": status, "body": body}
    if content_type:
        resp["headers"] = {"Content-Type": content_type}
    return resp


def _validation_token(event: Dict[str, Any]) -> Optional[str]:
    params = event.get("queryStringParameters") or {}
    if not isinstance(params, dict):
        return None
    token = params.get(VALIDATION_TOKEN_PARAM)
    return token if isinstance(token, str) and token != "" else None


def _request_body(event: Dict[str, Any]) -> Optional[str]:
    body = event.get("body")
    if body is None:
        return None
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body).decode("utf-8")
        except ValueError as exc:
            raise ValidationError("Body is not valid base64 UTF-8") from exc
    return body if isinstance(body, str) else None


class NotificationDispatcher:
    """
    Turns an API Gateway proxy event into one sync pass per notified subscription.

    - `?validationToken=...` → 200 text/plain echoing the token, nothing else.
    - Notification batch → one pass per distinct subscription id, each failure
      logged and isolated, then 204.
    - Anything else → 400.
    """

    def __init__(
        self,
        ctx: SyncContext,
        *,
        client_state: Optional[str] = None,
        sync: Callable[[str, SyncContext], Dict[str, Any]] = sync_subscription,
    ) -> None:
        self._ctx = ctx
        self._client_state = client_state
        self._sync = sync

    def dispatch(self, event: Dict[str, Any]) -> Dict[str, Any]:
        token = _validation_token(event)
        if token is not None:
            logger.info("Answering subscription validation handshake")
            return _response(200, token, "text/plain")

        try:
            batch = decode_batch(_request_body(event))
        except ValidationError as exc:
            logger.warning("Rejected webhook payload: %s", exc)
            return _response(400, str(exc), "text/plain")

        self.process(batch)
        return _response(204)

    def process(self, batch: NotificationBatch) -> Dict[str, Any]:
        """Run one pass per accepted subscription; returns per-subscription outcomes."""
        accepted = []
        for sub_id in batch.subscription_ids():
            if self._client_state_matches(batch, sub_id):
                accepted.append(sub_id)
            else:
                logger.warning("clientState mismatch for subscription %s; skipping", sub_id)

        outcomes: Dict[str, Any] = {}
        for sub_id in accepted:
            try:
                outcomes[sub_id] = self._sync(sub_id, self._ctx)
            except Exception as exc:
                # One subscription's failure never stops the rest of the batch
                logger.exception("Sync pass failed for subscription %s", sub_id)
                outcomes[sub_id] = {"ok": False, "error": type(exc).__name__}
        return outcomes

    def _client_state_matches(self, batch: NotificationBatch, sub_id: str) -> bool:
        if not self._client_state:
            return True
        expected = self._client_state.encode("utf-8")
        return all(
            hmac.compare_digest((n.client_state or "").encode("utf-8"), expected)
            for n in batch.value
            if n.subscription_id == sub_id
        )


_DISPATCHER: Optional[NotificationDispatcher] = None


def _get_dispatcher() -> NotificationDispatcher:
    """Build the dispatcher once per Lambda container (clients and locks are reused)."""
    global _DISPATCHER
    if _DISPATCHER is None:
        settings = Settings.from_env()
        _DISPATCHER = NotificationDispatcher(
            SyncContext.from_settings(settings),
            client_state=settings.client_state,
        )
    return _DISPATCHER


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for the Graph change-notification webhook (API Gateway proxy).

    Environment:
    - STATE_BUCKET, STATE_PREFIX (default: subscriptions/), PARAM_PREFIX
    - SSM under PARAM_PREFIX: graph_client_id, graph_client_secret, fernet_key,
      optional alpha_vantage_api_key and client_state
    """
    configure_logging()

    # The handshake needs no configuration; answer it before touching SSM
    token = _validation_token(event)
    if token is not None:
        return _response(200, token, "text/plain")

    try:
        dispatcher = _get_dispatcher()
    except RuntimeError:
        logger.exception("Webhook is not configured")
        return _response(500, "Service not configured", "text/plain")
    return dispatcher.dispatch(event)
