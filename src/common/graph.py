from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .rate_limiter import SlidingWindowRateLimiter, RateLimitError


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://graph.microsoft.com/v1.0"
ROOT_DELTA_PATH = "/me/drive/root/delta"

CellValue = Union[str, int, float, bool, None]


class GraphError(RuntimeError):
    """Base error for the Microsoft Graph client."""


class GraphApiError(GraphError):
    """Graph answered with a non-success status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GraphPayloadError(GraphError):
    """Graph answered 2xx but the body does not decode to the expected shape."""


class GraphRateLimitError(GraphError):
    """Local rate limiting prevented the request."""


# --------------- Wire models ---------------
class DriveItem(BaseModel):
    """One record of the drive delta feed. Only the fields the sync reads."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    file: Optional[Dict[str, Any]] = None
    deleted: Optional[Dict[str, Any]] = None

    @property
    def is_file(self) -> bool:
        return self.file is not None

    @property
    def is_deleted(self) -> bool:
        return self.deleted is not None


class DeltaPage(BaseModel):
    """
    One page of `/drive/root/delta`.

    Exactly one of `next_link` (more pages in this pass) or `delta_link`
    (pass complete; resume cursor for the next pass) must be present.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    value: List[DriveItem] = Field(default_factory=list)
    next_link: Optional[str] = Field(default=None, alias="@odata.nextLink")
    delta_link: Optional[str] = Field(default=None, alias="@odata.deltaLink")

    @model_validator(mode="after")
    def _exactly_one_cursor(self) -> "DeltaPage":
        if bool(self.next_link) == bool(self.delta_link):
            raise ValueError("delta page must carry exactly one of @odata.nextLink / @odata.deltaLink")
        return self


class Worksheet(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    position: Optional[int] = None


class UsedRange(BaseModel):
    """Used range of a worksheet: server address plus a rectangular value grid."""

    model_config = ConfigDict(extra="ignore")

    address: str
    values: List[List[CellValue]]

    @model_validator(mode="after")
    def _rectangular(self) -> "UsedRange":
        widths = {len(row) for row in self.values}
        if len(widths) > 1:
            raise ValueError(f"grid rows have unequal lengths: {sorted(widths)}")
        return self

    @property
    def local_address(self) -> str:
        """Address without the sheet qualifier, e.g. 'Sheet1!A1:B2' -> 'A1:B2'."""
        return self.address.rsplit("!", 1)[-1]


class GraphClient:
    """
    Minimal Microsoft Graph client for drive delta and workbook ranges.

    Notes
    - Bearer token is fixed per client; build a new client after renewal.
    - Absolute `@odata.nextLink` / `@odata.deltaLink` URLs are requested verbatim.
    - 429 and 5xx responses and transport errors are retried with exponential
      backoff, honoring `Retry-After` when Graph sends it.
    """

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        max_per_second: int = 10,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not access_token:
            raise ValueError("access_token is required")
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)
        self._limiter = SlidingWindowRateLimiter(max_calls=max_per_second, per_seconds=1.0)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "GraphClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def delta_page(self, link: Optional[str] = None) -> DeltaPage:
        """Fetch one delta page; `link=None` starts a pass from the beginning of the feed."""
        url = link or self._url(ROOT_DELTA_PATH)
        data = self._request("GET", url)
        return _decode(DeltaPage, data, "delta page")

    def first_worksheet(self, item_id: str) -> Worksheet:
        data = self._request("GET", self._url(f"/me/drive/items/{item_id}/workbook/worksheets"))
        sheets = data.get("value") if isinstance(data, dict) else None
        if not isinstance(sheets, list) or not sheets:
            raise GraphPayloadError(f"Workbook {item_id} has no worksheets")
        decoded = [_decode(Worksheet, s, "worksheet") for s in sheets]
        # Graph lists sheets in tab order, but position is authoritative when present
        decoded.sort(key=lambda ws: ws.position if ws.position is not None else 0)
        return decoded[0]

    def used_range(self, item_id: str, worksheet_id: str) -> UsedRange:
        path = f"/me/drive/items/{item_id}/workbook/worksheets/{worksheet_id}/usedRange(valuesOnly=true)"
        data = self._request("GET", self._url(path))
        return _decode(UsedRange, data, "used range")

    def patch_range(
        self,
        item_id: str,
        worksheet_id: str,
        address: str,
        values: List[List[CellValue]],
    ) -> Dict[str, Any]:
        """PATCH `values` onto `address`; `None` cells leave the target cell unchanged."""
        path = f"/me/drive/items/{item_id}/workbook/worksheets/{worksheet_id}/range(address='{address}')"
        return self._request("PATCH", self._url(path), json_body={"values": values})

    # --------------- Internal ---------------
    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _request(self, method: str, url: str, *, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            self._limiter.acquire(blocking=True)
        except RateLimitError as rl:
            raise GraphRateLimitError("Local rate limiter prevented request") from rl

        attempt = 0
        backoff = 1.0
        last_exc: Optional[Exception] = None
        while attempt < 4:
            try:
                resp = self._client.request(method, url, headers=self._headers, json=json_body)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
                delay = backoff
            else:
                if 200 <= resp.status_code < 300:
                    if not resp.content:
                        return {}
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise GraphPayloadError(f"Non-JSON body from {method} {url}") from exc

                if resp.status_code in (429, 500, 502, 503, 504):
                    last_exc = GraphApiError(
                        f"HTTP {resp.status_code} from Graph", status_code=resp.status_code
                    )
                    delay = _retry_after(resp) or backoff
                else:
                    raise GraphApiError(
                        f"HTTP {resp.status_code} from Graph {method}: {resp.text[:200]}",
                        status_code=resp.status_code,
                    )

            attempt += 1
            logger.debug("Retrying %s after %s (attempt %d)", method, last_exc, attempt)
            time.sleep(min(delay, 10.0))
            backoff = min(backoff * 2, 8.0)

        if last_exc is not None:
            raise GraphError("Failed request after retries") from last_exc
        raise GraphError("Failed request after retries (unknown error)")


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _decode(model, data: Any, what: str):
    try:
        return model.model_validate(data)
    except ValidationError as ve:
        raise GraphPayloadError(f"Failed to parse {what}: {ve}") from ve


__all__ = [
    "GraphClient",
    "GraphError",
    "GraphApiError",
    "GraphPayloadError",
    "GraphRateLimitError",
    "DriveItem",
    "DeltaPage",
    "Worksheet",
    "UsedRange",
    "CellValue",
]
