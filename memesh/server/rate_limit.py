"""
Token-bucket admission control per (agent, endpoint).

Buckets are created on first use and refilled lazily on each check at
max_tokens per minute. check_limit() never awaits, so on a single event loop
the refill / consume step for a bucket cannot interleave with another request.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from memesh.config import (
    RATE_LIMIT_CLEANUP_INTERVAL_MS,
    RATE_LIMIT_IDLE_EXPIRY_MS,
    get_rate_limit_rpm,
)
from memesh.metrics import A2AMetrics, METRIC_NAMES

logger = logging.getLogger(__name__)

# Rate-limit keys used by the HTTP routes
SEND_MESSAGE = "send-message"
GET_TASK = "get-task"
LIST_TASKS = "list-tasks"
CANCEL_TASK = "cancel-task"


@dataclass
class TokenBucket:
    tokens: float
    max_tokens: int
    last_refill: float
    refill_rate: float  # tokens per second


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset_at: float  # clock time at which the bucket is full again
    retry_after: Optional[int] = None  # seconds, only set when denied


@dataclass
class RateLimitStats:
    agent_id: str
    endpoint: str
    total_requests: int = 0
    limit_exceeded: int = 0
    last_limit_hit: Optional[float] = None


class RateLimiter:
    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        limits: Optional[dict[str, int]] = None,
        metrics: Optional[A2AMetrics] = None,
    ) -> None:
        self._clock = clock
        self._limits = dict(limits or {})
        self._metrics = metrics
        self._buckets: dict[tuple[str, str], TokenBucket] = {}
        self._stats: dict[tuple[str, str], RateLimitStats] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    def limit_for(self, endpoint: str) -> int:
        if endpoint in self._limits:
            return self._limits[endpoint]
        return get_rate_limit_rpm(endpoint)

    def _bucket(self, key: tuple[str, str]) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            max_tokens = self.limit_for(key[1])
            bucket = TokenBucket(
                tokens=float(max_tokens),
                max_tokens=max_tokens,
                last_refill=self._clock(),
                refill_rate=max_tokens / 60.0,
            )
            self._buckets[key] = bucket
        return bucket

    def _refill(self, bucket: TokenBucket, now: float) -> None:
        elapsed = now - bucket.last_refill
        if elapsed > 0:
            bucket.tokens = min(float(bucket.max_tokens), bucket.tokens + elapsed * bucket.refill_rate)
            bucket.last_refill = now

    def check_limit(self, agent_id: str, endpoint: str) -> RateLimitResult:
        """Consume one token if available."""
        key = (agent_id, endpoint)
        bucket = self._bucket(key)
        now = self._clock()
        self._refill(bucket, now)

        allowed = bucket.tokens >= 1
        if allowed:
            bucket.tokens -= 1

        missing = bucket.max_tokens - bucket.tokens
        result = RateLimitResult(
            allowed=allowed,
            remaining=int(bucket.tokens),
            limit=bucket.max_tokens,
            reset_at=now + missing / bucket.refill_rate,
        )
        if not allowed:
            result.retry_after = max(1, math.ceil((1 - bucket.tokens) * 60.0 / bucket.max_tokens))

        self._record(agent_id, endpoint, allowed, now)
        return result

    def _record(self, agent_id: str, endpoint: str, allowed: bool, now: float) -> None:
        key = (agent_id, endpoint)
        stat = self._stats.get(key)
        if stat is None:
            stat = self._stats[key] = RateLimitStats(agent_id=agent_id, endpoint=endpoint)
        stat.total_requests += 1
        if allowed:
            return
        stat.limit_exceeded += 1
        stat.last_limit_hit = now
        logger.warning(
            f"[Rate Limit] Limit exceeded: agent={agent_id} endpoint={endpoint} "
            f"({stat.limit_exceeded}/{stat.total_requests} denied)"
        )
        if self._metrics:
            self._metrics.increment_counter(METRIC_NAMES.RATE_LIMITED, {"endpoint": endpoint})

    def get_stats(self) -> list[RateLimitStats]:
        return list(self._stats.values())

    def reset(self) -> None:
        self._buckets.clear()
        self._stats.clear()

    def cleanup(self, idle_seconds: Optional[float] = None) -> int:
        """Drop buckets untouched for `idle_seconds` along with their stats. Returns buckets removed."""
        if idle_seconds is None:
            idle_seconds = RATE_LIMIT_IDLE_EXPIRY_MS / 1000
        now = self._clock()
        stale = [k for k, b in self._buckets.items() if now - b.last_refill > idle_seconds]
        for key in stale:
            del self._buckets[key]
        # Stats never outlive their bucket
        for key in [k for k in self._stats if k not in self._buckets]:
            del self._stats[key]
        logger.debug(f"[Rate Limit] Cleanup removed {len(stale)} bucket(s), {len(self._buckets)} remaining")
        return len(stale)

    # ─────────────────────────────────────────────
    # Periodic cleanup
    # ─────────────────────────────────────────────

    def start_cleanup(self, interval_ms: int = RATE_LIMIT_CLEANUP_INTERVAL_MS) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval_ms / 1000))
        logger.info(f"[Rate Limit] Cleanup started (every {interval_ms} ms)")

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("[Rate Limit] Cleanup stopped")

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cleanup()
