"""Best-effort asset price oracle (CoinGecko simple-price API).

Lookups are time-bounded and never raise into the engine: any failure
(timeout, HTTP error, unknown asset, malformed payload) yields ``None``
and the caller falls back to a 1:1 USD valuation.
"""

from __future__ import annotations

import asyncio
import time
from decimal import Decimal
from threading import Lock

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tradesim.config import OracleConfig
from tradesim.connectors.rate_limiter import rate_limiter
from tradesim.observability.logger import get_logger
from tradesim.observability.metrics import metrics
from tradesim.storage.models import parse_decimal

log = get_logger(__name__)


class _PriceCache:
    """Small TTL cache keyed by asset id."""

    def __init__(self, ttl_secs: float):
        self._ttl = ttl_secs
        self._lock = Lock()
        self._entries: dict[str, tuple[Decimal, float]] = {}

    def get(self, key: str) -> Decimal | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            price, stored_at = entry
            if time.monotonic() - stored_at > self._ttl:
                self._entries.pop(key, None)
                return None
            return price

    def put(self, key: str, price: Decimal) -> None:
        with self._lock:
            self._entries[key] = (price, time.monotonic())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class PriceOracle:
    """Async USD price lookup by asset id."""

    def __init__(
        self,
        config: OracleConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config or OracleConfig()
        self._client = client or httpx.AsyncClient(
            base_url=self._config.base_url.rstrip("/"),
            timeout=self._config.timeout_secs,
            headers={"Accept": "application/json"},
        )
        self._cache = _PriceCache(self._config.cache_ttl_secs)

    async def close(self) -> None:
        await self._client.aclose()

    async def _fetch(self, asset_id: str) -> Decimal | None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self._config.max_retries)),
            wait=wait_exponential(multiplier=0.2, max=1),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                await rate_limiter.get("coingecko").acquire()
                resp = await self._client.get(
                    "/simple/price",
                    params={"ids": asset_id, "vs_currencies": "usd"},
                )
                resp.raise_for_status()
                data = resp.json()
        entry = data.get(asset_id) if isinstance(data, dict) else None
        if not isinstance(entry, dict):
            return None
        price = parse_decimal(entry.get("usd"))
        if price is None or price <= 0:
            return None
        return price

    async def get_price(self, asset_id: str) -> Decimal | None:
        """Return the USD price for ``asset_id`` or ``None`` if unavailable."""
        if not self._config.enabled or not asset_id:
            return None
        key = asset_id.lower()
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        try:
            price = await asyncio.wait_for(
                self._fetch(key), timeout=self._config.timeout_secs,
            )
        except Exception as e:
            metrics.incr("oracle.fallback")
            log.warning("oracle.lookup_failed", asset_id=key, error=repr(e))
            return None
        if price is None:
            metrics.incr("oracle.fallback")
            log.info("oracle.price_missing", asset_id=key)
            return None
        self._cache.put(key, price)
        return price
