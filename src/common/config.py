from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

import boto3
from botocore.exceptions import ClientError


# Environment variable names
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_STATE_PREFIX = "STATE_PREFIX"  # optional; defaults to "subscriptions/"
ENV_PARAM_PREFIX = "PARAM_PREFIX"
ENV_GRAPH_TENANT = "GRAPH_TENANT"
ENV_GRAPH_SCOPE = "GRAPH_SCOPE"
ENV_SENTINEL_PREFIX = "SENTINEL_PREFIX"
ENV_TRACKED_EXTENSION = "TRACKED_EXTENSION"
ENV_LOG_LEVEL = "LOG_LEVEL"

DEFAULT_STATE_PREFIX = "subscriptions/"
DEFAULT_TENANT = "common"
DEFAULT_SCOPE = "offline_access Files.ReadWrite"
DEFAULT_SENTINEL_PREFIX = "!roland"
DEFAULT_TRACKED_EXTENSION = ".xlsx"

# SSM parameter names under PARAM_PREFIX
PARAM_CLIENT_ID = "graph_client_id"
PARAM_CLIENT_SECRET = "graph_client_secret"
PARAM_FERNET_KEY = "fernet_key"
PARAM_ALPHA_VANTAGE_KEY = "alpha_vantage_api_key"
PARAM_CLIENT_STATE = "client_state"

SSM_PARAMS = (
    PARAM_CLIENT_ID,
    PARAM_CLIENT_SECRET,
    PARAM_FERNET_KEY,
    PARAM_ALPHA_VANTAGE_KEY,
    PARAM_CLIENT_STATE,
)


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Optional parameters may be missing or not granted to this role
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


@dataclass(frozen=True)
class Settings:
    """
    Resolved runtime configuration for the webhook Lambda.

    Non-secret values come from the environment; secrets are read from SSM
    Parameter Store under `PARAM_PREFIX`. `repr` hides every secret field.
    """

    state_bucket: str
    param_prefix: str
    client_id: str = field(repr=False)
    client_secret: str = field(repr=False)
    fernet_key: str = field(repr=False)
    state_prefix: str = DEFAULT_STATE_PREFIX
    tenant: str = DEFAULT_TENANT
    scope: str = DEFAULT_SCOPE
    sentinel_prefix: str = DEFAULT_SENTINEL_PREFIX
    tracked_extension: str = DEFAULT_TRACKED_EXTENSION
    alpha_vantage_api_key: Optional[str] = field(default=None, repr=False)
    client_state: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> "Settings":
        bucket = _require(_getenv(ENV_STATE_BUCKET), ENV_STATE_BUCKET)
        prefix = _require(_getenv(ENV_PARAM_PREFIX), ENV_PARAM_PREFIX)

        params = _load_ssm_params(prefix, SSM_PARAMS)
        return cls(
            state_bucket=bucket,
            param_prefix=prefix,
            client_id=_require(params.get(PARAM_CLIENT_ID), f"{prefix}{PARAM_CLIENT_ID}"),
            client_secret=_require(params.get(PARAM_CLIENT_SECRET), f"{prefix}{PARAM_CLIENT_SECRET}"),
            fernet_key=_require(params.get(PARAM_FERNET_KEY), f"{prefix}{PARAM_FERNET_KEY}"),
            state_prefix=_getenv(ENV_STATE_PREFIX, DEFAULT_STATE_PREFIX) or DEFAULT_STATE_PREFIX,
            tenant=_getenv(ENV_GRAPH_TENANT, DEFAULT_TENANT) or DEFAULT_TENANT,
            scope=_getenv(ENV_GRAPH_SCOPE, DEFAULT_SCOPE) or DEFAULT_SCOPE,
            sentinel_prefix=_getenv(ENV_SENTINEL_PREFIX, DEFAULT_SENTINEL_PREFIX) or DEFAULT_SENTINEL_PREFIX,
            tracked_extension=_getenv(ENV_TRACKED_EXTENSION, DEFAULT_TRACKED_EXTENSION)
            or DEFAULT_TRACKED_EXTENSION,
            alpha_vantage_api_key=params.get(PARAM_ALPHA_VANTAGE_KEY),
            client_state=params.get(PARAM_CLIENT_STATE),
        )


def configure_logging() -> None:
    """Apply `LOG_LEVEL` to the root logger (Lambda installs the handler)."""
    level_name = (_getenv(ENV_LOG_LEVEL, "INFO") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    root.setLevel(level)


__all__ = ["Settings", "configure_logging"]
