from __future__ import annotations

import logging
import random
import re
from typing import Optional

from .alpha_vantage import AlphaVantageClient, AlphaVantageError
from .errors import ResolverError


logger = logging.getLogger(__name__)

FALLBACK_VALUE = "#ROLAND?"
DEFAULT_RANDOM_RANGE = (1, 100)


class PlaceholderResolver:
    """
    Maps a matched placeholder cell (e.g. "!roland AAPL stock quote") to its value.

    Recognized forms, after the sentinel prefix:
    - "<SYMBOL> stock quote" → latest price, two decimals (Alpha Vantage GLOBAL_QUOTE)
    - "random [<lo> <hi>]"   → random integer in [lo, hi], default 1..100
    Anything else resolves to FALLBACK_VALUE instead of failing the scan.
    A quote lookup that errors raises ResolverError.
    """

    def __init__(
        self,
        prefix: str = "!roland",
        *,
        quotes: Optional[AlphaVantageClient] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        p = re.escape(prefix)
        self._quote_re = re.compile(rf"^{p}\s+([A-Za-z0-9.\-]{{1,15}})\s+stock\s+quote\s*$", re.IGNORECASE)
        self._random_re = re.compile(rf"^{p}\s+random(?:\s+(-?\d+)\s+(-?\d+))?\s*$", re.IGNORECASE)
        self._quotes = quotes
        self._rng = rng or random.Random()

    def __call__(self, text: str) -> str:
        return self.resolve(text)

    def resolve(self, text: str) -> str:
        m = self._quote_re.match(text)
        if m:
            return self._stock_quote(m.group(1).upper())

        m = self._random_re.match(text)
        if m:
            lo, hi = DEFAULT_RANDOM_RANGE
            if m.group(1) is not None:
                lo, hi = sorted((int(m.group(1)), int(m.group(2))))
            return str(self._rng.randint(lo, hi))

        logger.info("Unrecognized placeholder %r; using fallback", text[:80])
        return FALLBACK_VALUE

    def _stock_quote(self, symbol: str) -> str:
        if self._quotes is None:
            raise ResolverError(f"No quote provider configured for {symbol}")
        try:
            quote = self._quotes.global_quote(symbol)
        except AlphaVantageError as exc:
            raise ResolverError(f"Quote lookup for {symbol} failed: {exc}") from exc
        return f"{quote.price:.2f}"


__all__ = ["PlaceholderResolver", "FALLBACK_VALUE"]
