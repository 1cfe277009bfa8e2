from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import BaseModel, ValidationError

from .errors import AuthError


logger = logging.getLogger(__name__)

DEFAULT_AUTHORITY = "https://login.microsoftonline.com"


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None


class CredentialRenewer:
    """
    Exchanges a stored refresh token for a fresh access/refresh pair.

    Notes
    - Uses the Microsoft identity platform v2 token endpoint with
      `grant_type=refresh_token` and the application's client credentials.
    - Single attempt: the caller treats failure as non-fatal and carries on
      with the stale access token, so retrying here only delays the pass.
    - When the endpoint omits a new refresh token the existing one is kept.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        tenant: str = "common",
        scope: str = "offline_access Files.ReadWrite",
        authority: str = DEFAULT_AUTHORITY,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not client_id or not client_secret:
            raise ValueError("client_id and client_secret are required")
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._token_url = f"{authority.rstrip('/')}/{tenant}/oauth2/v2.0/token"
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "CredentialRenewer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def exchange(self, refresh_token: str) -> TokenResponse:
        """POST the refresh token and return the decoded token pair.

        Raises AuthError on transport failure, non-200 status or a body that
        does not carry an access token.
        """
        if not refresh_token:
            raise AuthError("No refresh token stored for subscription")
        form = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": self._scope,
        }
        try:
            resp = self._client.post(self._token_url, data=form)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise AuthError(f"Token endpoint unreachable: {exc}") from exc

        if resp.status_code != 200:
            # Body carries error/error_description only, never tokens
            raise AuthError(f"HTTP {resp.status_code} from token endpoint: {resp.text[:200]}")
        try:
            return TokenResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise AuthError("Malformed token endpoint response") from exc

    def renew(self, state) -> None:
        """Rotate `state.access_token`/`state.refresh_token` in place; the caller persists."""
        tokens = self.exchange(state.refresh_token)
        state.access_token = tokens.access_token
        if tokens.refresh_token:
            state.refresh_token = tokens.refresh_token
        logger.info("Renewed credentials for subscription %s", state.subscription_id)


__all__ = ["CredentialRenewer", "TokenResponse"]
