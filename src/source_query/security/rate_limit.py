"""Fixed-window, in-memory rate limiting keyed by client and route."""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitRule:
    """At most `max_requests` per `window_seconds`."""

    max_requests: int
    window_seconds: float

    @classmethod
    def from_tuple(cls, value: tuple[int, int]) -> "RateLimitRule":
        return cls(max_requests=value[0], window_seconds=value[1])


@dataclass
class RateLimitBucket:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0


class RateLimiter:
    """
    Fixed-window counter per (client, route).

    The first request in a window opens it with count=1; further requests
    before the reset increment the count and are rejected once the count
    would exceed the rule's maximum. Expired buckets are purged lazily at
    most once per purge interval. Safe to call from multiple threads.
    """

    def __init__(
        self,
        rules: dict[str, RateLimitRule] | None = None,
        default_rule: RateLimitRule | None = None,
        purge_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rules = dict(rules or {})
        self.default_rule = default_rule
        self.purge_interval = purge_interval
        self._clock = clock
        self._buckets: dict[tuple[str, str], RateLimitBucket] = {}
        self._lock = threading.Lock()
        self._last_purge = clock()

    def rule_for(self, route: str) -> RateLimitRule | None:
        return self.rules.get(route, self.default_rule)

    def check(self, client_id: str, route: str) -> RateLimitDecision:
        """Count a request and decide whether it may proceed. Never raises."""
        rule = self.rule_for(route)
        if rule is None:
            return RateLimitDecision(allowed=True)

        now = self._clock()
        key = (client_id, route)

        with self._lock:
            if now - self._last_purge >= self.purge_interval:
                self._purge(now)

            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket.reset_at:
                self._buckets[key] = RateLimitBucket(count=1, reset_at=now + rule.window_seconds)
                return RateLimitDecision(allowed=True)

            if bucket.count >= rule.max_requests:
                retry_after = max(0, math.ceil(bucket.reset_at - now))
                logger.info(
                    "rate_limit_exceeded",
                    client_id=client_id,
                    route=route,
                    retry_after=retry_after,
                )
                return RateLimitDecision(allowed=False, retry_after=retry_after)

            bucket.count += 1
            return RateLimitDecision(allowed=True)

    def purge_expired(self) -> int:
        """Drop buckets whose window has elapsed. Returns how many were dropped."""
        with self._lock:
            return self._purge(self._clock())

    def _purge(self, now: float) -> int:
        expired = [key for key, bucket in self._buckets.items() if now >= bucket.reset_at]
        for key in expired:
            del self._buckets[key]
        self._last_purge = now
        return len(expired)

    def __len__(self) -> int:
        return len(self._buckets)
