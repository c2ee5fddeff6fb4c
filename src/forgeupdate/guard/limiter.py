"""
Per-client request guard.

Fixed wall-clock windows per (client_id, route_class). Metadata checks and
artifact downloads have separate budgets, so a burst of downloads cannot
starve update checks and vice versa.

State is single-process; running several server instances multiplies the
effective budget (no shared counter store).
"""

from __future__ import annotations

import hashlib
import hmac
import math
import secrets
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from forgeupdate.config import RateLimitConfig


class RouteClass(str, Enum):
    """Coarse endpoint category used to scope rate limits."""

    METADATA = "metadata"  # latest/manifest/stats queries
    DOWNLOAD = "download"  # artifact transfer


@dataclass(frozen=True)
class Admission:
    """Outcome of a guard check.

    Attributes:
        allowed: True if the request may proceed.
        retry_after_s: Whole seconds until the window resets (0 when allowed).
        remaining: Requests left in the current window after this one.
        limit: Configured budget for the route class.
    """

    allowed: bool
    retry_after_s: int = 0
    remaining: int = 0
    limit: int = 0


@dataclass
class RateBucket:
    """Per (client, route class) window state. Mutated only by RequestGuard."""

    client_id: str
    route_class: RouteClass
    window_start: float
    count: int = 0
    last_seen: float = 0.0


@dataclass
class GuardMetrics:
    """Guard decision counters."""

    admitted: int = 0
    rejected: int = 0
    buckets_swept: int = 0
    buckets_evicted: int = 0


class RequestGuard:
    """
    Fixed-window rate limiter keyed by (client_id, route_class).

    Tracked buckets never exceed ``max_buckets``: idle ones are swept first,
    then the least recently seen is evicted. Buckets are kept in last-seen
    order, so a sweep only touches the buckets it removes.

    ``admit()`` has no await points, so under asyncio each bucket update is
    atomic without locks, and unrelated keys never contend.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        time_fn: Callable[[], float] | None = None,
    ) -> None:
        """
        Initialize guard.

        Args:
            config: Rate limit configuration. Uses defaults if not provided.
            time_fn: Wall-clock seconds, injectable for deterministic tests.
        """
        self._config = config or RateLimitConfig()
        self._time_fn = time_fn or time.time
        # Ordered by last_seen, least recent first
        self._buckets: OrderedDict[tuple[str, RouteClass], RateBucket] = OrderedDict()
        self._metrics = GuardMetrics()

    @property
    def metrics(self) -> GuardMetrics:
        return self._metrics

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)

    def limit_for(self, route_class: RouteClass) -> int:
        """Budget per window for a route class."""
        if route_class == RouteClass.DOWNLOAD:
            return self._config.download_limit
        return self._config.metadata_limit

    def _window_start(self, now: float) -> float:
        window = self._config.window_s
        return math.floor(now / window) * window

    def admit(
        self, client_id: str, route_class: RouteClass, now: float | None = None
    ) -> Admission:
        """Count one request against the client's budget.

        Rejected requests do not advance the counter, which therefore never
        exceeds the configured limit.
        """
        if now is None:
            now = self._time_fn()
        limit = self.limit_for(route_class)
        window_start = self._window_start(now)
        key = (client_id, route_class)

        bucket = self._buckets.get(key)
        if bucket is None:
            if len(self._buckets) >= self._config.max_buckets:
                self._make_room(now)
            bucket = RateBucket(client_id=client_id, route_class=route_class, window_start=window_start)
            self._buckets[key] = bucket
        else:
            self._buckets.move_to_end(key)
            if bucket.window_start != window_start:
                bucket.window_start = window_start
                bucket.count = 0
        bucket.last_seen = now

        if bucket.count >= limit:
            self._metrics.rejected += 1
            retry_after = max(1, math.ceil(window_start + self._config.window_s - now))
            return Admission(allowed=False, retry_after_s=retry_after, remaining=0, limit=limit)

        bucket.count += 1
        self._metrics.admitted += 1
        return Admission(allowed=True, remaining=limit - bucket.count, limit=limit)

    def sweep(self, now: float | None = None) -> int:
        """Drop buckets idle for longer than the TTL.

        Returns:
            Number of buckets removed.
        """
        if now is None:
            now = self._time_fn()
        cutoff = now - self._config.idle_ttl_s
        removed = 0
        # Oldest first; stop at the first bucket still in use
        while self._buckets:
            key, bucket = next(iter(self._buckets.items()))
            if bucket.last_seen >= cutoff:
                break
            del self._buckets[key]
            removed += 1
        self._metrics.buckets_swept += removed
        return removed

    def _make_room(self, now: float) -> None:
        """Free one slot below max_buckets, evicting the least recently seen bucket if none is idle."""
        if self.sweep(now) == 0:
            self._buckets.popitem(last=False)
            self._metrics.buckets_evicted += 1

    def get_bucket(self, client_id: str, route_class: RouteClass) -> RateBucket | None:
        """Inspect a bucket (observability/tests)."""
        return self._buckets.get((client_id, route_class))

    def reset(self) -> None:
        """Reset all state (for testing)."""
        self._buckets.clear()
        self._metrics = GuardMetrics()


class ClientIdentity:
    """
    Derives coarse client ids from network addresses.

    Addresses are hashed with a per-deployment salt so raw IPs never reach the
    limiter state or the stats store.
    """

    def __init__(self, salt: str = "") -> None:
        self._salt = (salt or secrets.token_hex(16)).encode()

    def client_id(self, address: str | None) -> str:
        """Stable 16-hex-char id for an address."""
        digest = hmac.new(self._salt, (address or "unknown").encode(), hashlib.sha256)
        return digest.hexdigest()[:16]
