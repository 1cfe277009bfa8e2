from __future__ import annotations

import time
from datetime import date, datetime
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from .rate_limiter import SlidingWindowRateLimiter, RateLimitError


DEFAULT_BASE_URL = "https://www.alphavantage.co/query"


class AlphaVantageError(RuntimeError):
    """Base error for Alpha Vantage client."""


class AlphaVantageApiError(AlphaVantageError):
    """API returned an error payload or unexpected structure."""


class AlphaVantageRateLimitError(AlphaVantageError):
    """Local or remote rate limiting prevented the request."""


class Quote(BaseModel):
    symbol: str
    price: float
    latest_trading_day: Optional[date] = None
    change: Optional[float] = None
    change_percent: Optional[str] = Field(default=None, description="e.g. '1.2345%'")


class AlphaVantageClient:
    """
    Minimal Alpha Vantage client for latest quotes, with client-side throttling.

    Notes
    - Free plan: 5 req/min, 500 req/day. A local 5 RPM sliding window keeps a
      sheet with many quote placeholders from tripping the remote limit.
    - Network errors, 429 and 5xx are retried with exponential backoff.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        max_per_minute: int = 5,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self._api_key = api_key
        self._base_url = base_url.rstrip("?")
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self._timeout)
        self._limiter = SlidingWindowRateLimiter(max_calls=max_per_minute, per_seconds=60.0)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "AlphaVantageClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def global_quote(self, symbol: str) -> Quote:
        """Fetch the latest quote for `symbol` via `GLOBAL_QUOTE`."""
        data = self._request({"function": "GLOBAL_QUOTE", "symbol": symbol, "datatype": "json"})
        try:
            return self._parse_global_quote(data)
        except (ValidationError, ValueError) as ve:
            raise AlphaVantageApiError(f"Failed to parse quote payload: {ve}") from ve

    # --------------- Internal ---------------
    def _request(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = {**params, "apikey": self._api_key}

        try:
            self._limiter.acquire(blocking=True)
        except RateLimitError as rl:
            raise AlphaVantageRateLimitError("Local rate limiter prevented request") from rl

        attempt = 0
        backoff = 1.0
        last_exc: Optional[Exception] = None
        while attempt < 4:
            try:
                resp = self._client.get(self._base_url, params=query)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code == 200:
                    try:
                        payload = resp.json()
                    except ValueError as exc:
                        raise AlphaVantageApiError("Failed to parse JSON from Alpha Vantage") from exc
                    self._raise_on_api_error(payload)
                    return payload  # type: ignore[return-value]
                if resp.status_code in (429, 500, 502, 503, 504):
                    last_exc = AlphaVantageApiError(
                        f"HTTP {resp.status_code} from Alpha Vantage"
                    )
                else:
                    raise AlphaVantageApiError(
                        f"HTTP {resp.status_code} from Alpha Vantage: {resp.text[:200]}"
                    )

            attempt += 1
            time.sleep(backoff)
            backoff = min(backoff * 2, 8.0)

        if last_exc is not None:
            raise AlphaVantageError("Failed request after retries") from last_exc
        raise AlphaVantageError("Failed request after retries (unknown error)")

    @staticmethod
    def _raise_on_api_error(payload: Dict[str, Any]) -> None:
        if "Error Message" in payload:
            raise AlphaVantageApiError(payload.get("Error Message", "API error"))
        if "Note" in payload:
            # Usually the per-minute quota note
            raise AlphaVantageRateLimitError(payload.get("Note", "Rate limit exceeded"))
        if "Information" in payload:
            raise AlphaVantageApiError(payload.get("Information", "API info message"))

    @staticmethod
    def _parse_global_quote(payload: Dict[str, Any]) -> Quote:
        fields = payload.get("Global Quote")
        # Unknown symbols come back as an empty object rather than an error
        if not isinstance(fields, dict) or not fields.get("05. price"):
            raise AlphaVantageApiError("Quote missing in payload")

        day = fields.get("07. latest trading day")
        change = fields.get("09. change")
        return Quote(
            symbol=str(fields.get("01. symbol", "")),
            price=float(fields["05. price"]),
            latest_trading_day=datetime.strptime(day, "%Y-%m-%d").date() if day else None,
            change=float(change) if change not in (None, "") else None,
            change_percent=fields.get("10. change percent"),
        )


__all__ = [
    "AlphaVantageClient",
    "AlphaVantageError",
    "AlphaVantageApiError",
    "AlphaVantageRateLimitError",
    "Quote",
]
