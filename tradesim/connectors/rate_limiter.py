"""Token-bucket rate limiter for outbound price lookups.

Public price APIs throttle aggressively; every request goes through a
per-endpoint bucket so a large batch of subscriptions cannot burst past
the provider's limit.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from threading import Lock


@dataclass
class BucketConfig:
    """Configuration for a single rate-limit bucket."""
    tokens_per_second: float
    max_burst: int
    name: str = ""


DEFAULT_LIMITS: dict[str, BucketConfig] = {
    # CoinGecko's public tier allows roughly 30 calls per minute
    "coingecko": BucketConfig(tokens_per_second=0.5, max_burst=5, name="CoinGecko"),
}


class TokenBucket:
    """Thread-safe token bucket rate limiter."""

    def __init__(self, config: BucketConfig):
        self._config = config
        self._tokens: float = float(config.max_burst)
        self._last_refill: float = time.monotonic()
        self._lock = Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(
            float(self._config.max_burst),
            self._tokens + elapsed * self._config.tokens_per_second,
        )
        self._last_refill = now

    def try_acquire(self) -> bool:
        """Try to acquire a token without blocking. Returns True if acquired."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def wait_time(self) -> float:
        """Return seconds until a token is available."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                return 0.0
            deficit = 1.0 - self._tokens
            return deficit / self._config.tokens_per_second

    async def acquire(self) -> None:
        """Acquire a token, waiting if necessary."""
        while True:
            wt = self.wait_time()
            if wt <= 0:
                if self.try_acquire():
                    return
            else:
                await asyncio.sleep(wt)


class RateLimiterRegistry:
    """Registry of per-endpoint rate limiters."""

    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = Lock()

    def get(self, endpoint: str) -> TokenBucket:
        """Get or create a rate limiter for an endpoint."""
        with self._lock:
            if endpoint not in self._buckets:
                config = DEFAULT_LIMITS.get(
                    endpoint,
                    BucketConfig(tokens_per_second=5.0, max_burst=10, name=endpoint),
                )
                self._buckets[endpoint] = TokenBucket(config)
            return self._buckets[endpoint]

    def configure(self, endpoint: str, tokens_per_second: float, max_burst: int) -> None:
        """Override rate limit for an endpoint."""
        with self._lock:
            self._buckets[endpoint] = TokenBucket(BucketConfig(
                tokens_per_second=tokens_per_second,
                max_burst=max_burst,
                name=endpoint,
            ))


# Global singleton
rate_limiter = RateLimiterRegistry()
