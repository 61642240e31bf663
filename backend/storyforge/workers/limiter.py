from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque

from storyforge.core.redis_client import await_if_needed

WindowBucket = Deque[float]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LimiterOptions:
    max: int
    duration_ms: int


def _prune(bucket: WindowBucket, now: float, window_seconds: float) -> None:
    while bucket and now - bucket[0] >= window_seconds:
        bucket.popleft()


class RollingWindowLimiter:
    """Caps job starts at ``max`` per rolling ``duration_ms`` for one worker attachment.

    All concurrency slots of the attachment share the same window. When a Redis
    client is supplied the count is also enforced across processes with a fixed
    window counter; Redis errors fall back to the in-process window.
    """

    def __init__(
        self,
        options: LimiterOptions,
        *,
        key: str,
        redis=None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        if options.max <= 0 or options.duration_ms <= 0:
            raise ValueError("limiter max and duration_ms must be positive")
        self.options = options
        self.key = key
        self.redis = redis
        self._clock = clock
        self._wall_clock = wall_clock
        self.bucket: WindowBucket = deque()

    @property
    def window_seconds(self) -> float:
        return self.options.duration_ms / 1000.0

    def delay_seconds(self) -> float:
        """Seconds until another start fits in the local window (0 when it fits now)."""
        now = self._clock()
        _prune(self.bucket, now, self.window_seconds)
        if len(self.bucket) < self.options.max:
            return 0.0
        return max(0.0, self.bucket[0] + self.window_seconds - now)

    def record(self) -> None:
        self.bucket.append(self._clock())

    def _shared_window(self) -> tuple[str, int, int]:
        window_seconds = max(1, int(math.ceil(self.window_seconds)))
        now_int = int(self._wall_clock())
        return f"queue_limiter:{self.key}:{now_int // window_seconds}", window_seconds, now_int

    async def shared_delay_seconds(self) -> float:
        """Seconds until the shared Redis window has room; 0 without Redis."""
        if self.redis is None:
            return 0.0
        redis_key, window_seconds, now_int = self._shared_window()
        try:
            raw = await await_if_needed(self.redis.get(redis_key))
        except Exception as exc:
            logger.warning("queue_limiter_redis_failed", extra={"limiter_key": self.key, "error": str(exc)})
            return 0.0
        if int(raw or 0) >= int(self.options.max):
            return float(max(1, window_seconds - (now_int % window_seconds)))
        return 0.0

    async def record_shared(self) -> None:
        if self.redis is None:
            return
        redis_key, window_seconds, _ = self._shared_window()
        try:
            count = await await_if_needed(self.redis.incr(redis_key))
            if int(count) == 1:
                await await_if_needed(self.redis.expire(redis_key, window_seconds))
        except Exception as exc:
            logger.warning("queue_limiter_redis_failed", extra={"limiter_key": self.key, "error": str(exc)})

    async def wait_time(self) -> float:
        return max(self.delay_seconds(), await self.shared_delay_seconds())

    async def record_start(self) -> None:
        self.record()
        await self.record_shared()

    def reset(self) -> None:
        self.bucket.clear()
