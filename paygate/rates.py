"""BTC/USD spot rate source."""
from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from .errors import RateUnavailable

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=usd"


class BitcoinPriceSource:
    """Fetches the BTC/USD rate and caches it for ``cache_seconds``.

    A failed fetch raises :class:`RateUnavailable`; a stale cached value is never
    served in place of a fresh one once the TTL has passed.
    """

    def __init__(
        self,
        url: str = DEFAULT_SOURCE,
        *,
        cache_seconds: float = 60.0,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.cache_seconds = cache_seconds
        self.timeout = timeout
        self._transport = transport
        self._rate: Optional[Decimal] = None
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    def _cached(self, now: float) -> Optional[Decimal]:
        if self._rate is not None and now - self._fetched_at < self.cache_seconds:
            return self._rate
        return None

    async def get_rate(self) -> Decimal:
        cached = self._cached(time.monotonic())
        if cached is not None:
            return cached

        async with self._lock:
            now = time.monotonic()
            cached = self._cached(now)
            if cached is not None:
                return cached

            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.get(self.url)
                    response.raise_for_status()
                    payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("BTC/USD rate fetch failed (%s): %s", self.url, exc)
                raise RateUnavailable(f"BTC/USD rate unavailable: {exc}") from exc

            raw = payload.get("bitcoin", {}).get("usd") if isinstance(payload, dict) else None
            try:
                rate = Decimal(str(raw))
            except (InvalidOperation, TypeError) as exc:
                raise RateUnavailable(f"Malformed BTC/USD rate payload: {payload!r}") from exc
            if raw is None or not rate.is_finite():
                raise RateUnavailable(f"Malformed BTC/USD rate payload: {payload!r}")

            self._rate = rate
            self._fetched_at = now
            logger.debug("BTC/USD rate refreshed: %s", rate)
            return rate


__all__ = ["BitcoinPriceSource", "DEFAULT_SOURCE"]
