"""Request pacing for chart fetches and Spotify lookups.

The refresh engine is handed `RateLimiter` objects and calls `acquire()`
before every outbound request, so tests can pass `UnlimitedRateLimiter`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)


class RateLimiter(Protocol):
    def acquire(self, tokens: float = 1.0, blocking: bool = True) -> bool: ...


@dataclass
class TokenBucket:
    """
    Token bucket holding at most `capacity` tokens, refilled continuously at
    `refill_rate` tokens per second. A capacity of 1 gives strict spacing of
    ``1 / refill_rate`` seconds between requests.
    """

    capacity: float
    refill_rate: float
    _tokens: float = field(init=False)
    _stamp: float = field(init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self._tokens = self.capacity
        self._stamp = time.monotonic()

    @classmethod
    def per_second(cls, rate: float) -> TokenBucket:
        return cls(capacity=1.0, refill_rate=rate)

    def _top_up(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._stamp) * self.refill_rate)
        self._stamp = now

    def acquire(self, tokens: float = 1.0, blocking: bool = True) -> bool:
        """
        Take ``tokens`` from the bucket.

        Returns False only when ``blocking`` is off and the bucket is short;
        otherwise sleeps until the deficit has refilled.
        """
        with self._lock:
            self._top_up()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            if not blocking:
                return False
            delay = (tokens - self._tokens) / self.refill_rate

        time.sleep(delay)

        with self._lock:
            self._top_up()
            self._tokens = max(0.0, self._tokens - tokens)
        return True


class UnlimitedRateLimiter:
    def acquire(self, tokens: float = 1.0, blocking: bool = True) -> bool:
        return True


class RateLimiterRegistry:
    """
    One shared bucket per remote host family.

    `spotify` allows one lookup per 100 ms; `kworb` one page per second.
    Unknown names get one request per second.
    """

    DEFAULT_RATES: dict[str, float] = {
        "spotify": 10.0,
        "kworb": 1.0,
    }

    def __init__(self, rates: dict[str, float] | None = None):
        self._rates = {**self.DEFAULT_RATES, **(rates or {})}
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def get_limiter(self, name: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(name)
            if bucket is None:
                bucket = TokenBucket.per_second(self._rates.get(name, 1.0))
                self._buckets[name] = bucket
                logger.debug(f"Pacing {name} at {bucket.refill_rate:g} req/s")
            return bucket


## Tests


def test_token_bucket_spends_capacity():
    bucket = TokenBucket(capacity=2.0, refill_rate=0.001)

    assert bucket.acquire(blocking=False)
    assert bucket.acquire(blocking=False)
    assert not bucket.acquire(blocking=False)


def test_token_bucket_blocks_until_refilled():
    bucket = TokenBucket.per_second(100.0)
    bucket.acquire()

    start = time.monotonic()
    assert bucket.acquire()
    assert time.monotonic() - start >= 0.005


def test_unlimited_rate_limiter():
    limiter = UnlimitedRateLimiter()
    assert all(limiter.acquire() for _ in range(1000))


def test_registry_rates():
    registry = RateLimiterRegistry({"spotify": 2.5})

    assert registry.get_limiter("spotify").refill_rate == 2.5
    assert registry.get_limiter("kworb").refill_rate == 1.0
    assert registry.get_limiter("kworb") is registry.get_limiter("kworb")
    assert registry.get_limiter("spotify").capacity == 1.0
