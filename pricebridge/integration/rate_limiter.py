"""Per-origin token bucket rate limiting for outbound vendor calls.

Each origin (hostname without a leading ``www.``) gets its own bucket sized
from a tier table matched by hostname suffix. Callers that find the bucket
empty wait in a bounded FIFO queue that a timer drains as tokens refill; a
throttling response drives the bucket negative so subsequent callers back off.
"""

from __future__ import annotations

import asyncio
import logging
import time
import urllib.parse
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from pricebridge.config import RateLimitConfig
from pricebridge.core.errors import QueueSaturatedError

logger = logging.getLogger(__name__)


def origin_for(url: str) -> str:
    """Extract the rate-limit origin from a URL.

    Example:
        >>> origin_for("https://www.super99.com/search?q=1")
        'super99.com'
        >>> origin_for("not a url")
        'unknown'
    """
    try:
        hostname = urllib.parse.urlsplit(url).hostname
    except (TypeError, ValueError):
        return "unknown"
    if not hostname:
        return "unknown"
    return hostname[4:] if hostname.startswith("www.") else hostname


@dataclass
class _Bucket:
    rate: float
    burst: float
    tokens: float
    last_refill: float
    waiters: deque[asyncio.Future] = field(default_factory=deque)
    timer: asyncio.TimerHandle | None = None


class TokenBucketRateLimiter:
    """Adaptive per-origin rate limiter.

    Example:
        >>> limiter = TokenBucketRateLimiter(RateLimitConfig())
        >>> async with limiter:
        ...     await limiter.acquire("https://super99.com/api")  # immediate within burst
        ...     limiter.penalize("https://super99.com/api")  # after an HTTP 429
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        time_source: Callable[[], float] = time.monotonic,
    ):
        """Initialize rate limiter.

        Args:
            config: Tier table and queue settings (defaults if omitted)
            time_source: Monotonic clock in seconds
        """
        self.config = config or RateLimitConfig()
        self._now = time_source
        self._buckets: dict[str, _Bucket] = {}
        self._tasks: list[asyncio.Task] = []
        self._stopped = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the idle bucket reclaim and stats logging tasks."""
        if self._tasks:
            return
        self._stopped = False
        self._tasks = [
            asyncio.create_task(
                self._periodic(self.config.cleanup_interval_seconds, self.reclaim_idle),
                name="rate-limiter-reclaim",
            ),
            asyncio.create_task(
                self._periodic(self.config.stats_interval_seconds, self._log_stats),
                name="rate-limiter-stats",
            ),
        ]
        logger.debug("Rate limiter started")

    async def stop(self) -> None:
        """Stop background tasks, cancel timers and fail pending waiters."""
        self._stopped = True
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        for origin, bucket in self._buckets.items():
            if bucket.timer is not None:
                bucket.timer.cancel()
                bucket.timer = None
            depth = len(bucket.waiters)
            while bucket.waiters:
                waiter = bucket.waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(QueueSaturatedError(origin, depth))
        logger.debug("Rate limiter stopped")

    async def __aenter__(self) -> TokenBucketRateLimiter:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _periodic(self, interval: float, action: Callable[[], object]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                action()
            except Exception as e:
                logger.warning(f"Rate limiter maintenance failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Limits and buckets
    # ------------------------------------------------------------------

    def limits_for(self, origin: str) -> tuple[float, float]:
        """Resolve ``(rate, burst)`` for an origin by suffix match.

        Example:
            >>> TokenBucketRateLimiter().limits_for("xyz.algolia.net")
            (50, 80)
        """
        for suffix, limits in self.config.tiers.items():
            if origin.endswith(suffix):
                return limits
        return self.config.default_rate, self.config.default_burst

    def _bucket(self, origin: str) -> _Bucket:
        bucket = self._buckets.get(origin)
        if bucket is None:
            rate, burst = self.limits_for(origin)
            bucket = _Bucket(rate=rate, burst=burst, tokens=burst, last_refill=self._now())
            self._buckets[origin] = bucket
        return bucket

    def _refill(self, bucket: _Bucket) -> None:
        now = self._now()
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(bucket.burst, bucket.tokens + elapsed * bucket.rate)
        bucket.last_refill = now

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    async def acquire(self, url: str) -> None:
        """Wait until a token is available for the URL's origin.

        Args:
            url: Full URL about to be requested

        Raises:
            QueueSaturatedError: If the origin's wait queue is full or the
                limiter is stopped while waiting
        """
        origin = origin_for(url)
        bucket = self._bucket(origin)
        self._refill(bucket)

        # Queued callers keep FIFO order over newcomers
        if not bucket.waiters and bucket.tokens >= 1:
            bucket.tokens -= 1
            return

        depth = len(bucket.waiters)
        if self._stopped or depth >= self.config.max_queue_depth:
            raise QueueSaturatedError(origin, depth, depth / bucket.rate)

        waiter = asyncio.get_running_loop().create_future()
        bucket.waiters.append(waiter)
        self._schedule_drain(origin, bucket)

        try:
            await waiter
        except asyncio.CancelledError:
            # Drop the abandoned slot so it does not consume a future token
            if waiter in bucket.waiters:
                bucket.waiters.remove(waiter)
            raise

    def _schedule_drain(self, origin: str, bucket: _Bucket) -> None:
        if bucket.timer is not None:
            return
        delay = max((1 - bucket.tokens) / bucket.rate, 1 / bucket.rate / 10)
        bucket.timer = asyncio.get_running_loop().call_later(
            delay, self._drain, origin, bucket
        )

    def _drain(self, origin: str, bucket: _Bucket) -> None:
        bucket.timer = None
        self._refill(bucket)

        while bucket.waiters and bucket.tokens >= 1:
            waiter = bucket.waiters.popleft()
            if waiter.done():
                continue
            bucket.tokens -= 1
            waiter.set_result(None)

        if bucket.waiters and not self._stopped:
            self._schedule_drain(origin, bucket)

    def penalize(self, url: str) -> None:
        """Report a throttling response (HTTP 429) for the URL's origin.

        Drives the bucket to at most ``-penalty_tokens`` so the next callers
        wait for the deficit to refill.
        """
        origin = origin_for(url)
        bucket = self._bucket(origin)
        bucket.tokens = min(bucket.tokens, -self.config.penalty_tokens)
        logger.warning(
            f"429 from {origin}, queue: {len(bucket.waiters)}, tokens: {bucket.tokens:.1f}"
        )

    # ------------------------------------------------------------------
    # Maintenance and monitoring
    # ------------------------------------------------------------------

    def reclaim_idle(self) -> int:
        """Remove buckets idle longer than the idle TTL with no waiters.

        Returns:
            Number of buckets removed
        """
        now = self._now()
        idle = [
            origin
            for origin, bucket in self._buckets.items()
            if not bucket.waiters and now - bucket.last_refill > self.config.idle_ttl_seconds
        ]
        for origin in idle:
            del self._buckets[origin]
        if idle:
            logger.info(f"Cleaned {len(idle)} idle buckets, {len(self._buckets)} remaining")
        return len(idle)

    def stats(self) -> dict[str, dict]:
        """Per-origin state for origins that are queueing or penalized."""
        return {
            origin: {"tokens": round(bucket.tokens, 1), "waiting": len(bucket.waiters)}
            for origin, bucket in self._buckets.items()
            if bucket.waiters or bucket.tokens < 0
        }

    def all_stats(self) -> dict[str, dict]:
        """Per-origin state for every known bucket."""
        return {
            origin: {
                "tokens": round(bucket.tokens, 1),
                "waiting": len(bucket.waiters),
                "rate": bucket.rate,
                "burst": bucket.burst,
            }
            for origin, bucket in self._buckets.items()
        }

    def _log_stats(self) -> None:
        active = self.stats()
        if active:
            logger.info(f"Active rate limit queues: {active}")
