import pytest

from storyforge.workers.limiter import LimiterOptions, RollingWindowLimiter


class _Clock:
    def __init__(self, value: float = 1000.0) -> None:
        self.value = value

    def __call__(self) -> float:
        return self.value


class _CounterRedisStub:
    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.expiries: dict[str, int] = {}

    async def get(self, key):
        value = self.counts.get(key)
        return None if value is None else str(value)

    async def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True


class _BrokenRedisStub:
    async def get(self, *_args, **_kwargs):
        raise ConnectionError("redis down")

    async def incr(self, *_args, **_kwargs):
        raise ConnectionError("redis down")


def test_limiter_rejects_non_positive_options() -> None:
    with pytest.raises(ValueError):
        RollingWindowLimiter(LimiterOptions(max=0, duration_ms=60000), key="video")
    with pytest.raises(ValueError):
        RollingWindowLimiter(LimiterOptions(max=3, duration_ms=0), key="video")


def test_rolling_window_allows_max_starts_per_window() -> None:
    clock = _Clock()
    limiter = RollingWindowLimiter(LimiterOptions(max=3, duration_ms=60000), key="video", clock=clock)

    for _ in range(3):
        assert limiter.delay_seconds() == 0.0
        limiter.record()

    clock.value += 10
    assert limiter.delay_seconds() == pytest.approx(50.0)

    clock.value += 50
    assert limiter.delay_seconds() == 0.0
    assert len(limiter.bucket) == 0


@pytest.mark.anyio("asyncio")
async def test_shared_window_counts_across_limiters() -> None:
    redis = _CounterRedisStub()
    wall = _Clock(value=1_200_000.0)
    first = RollingWindowLimiter(LimiterOptions(max=2, duration_ms=60000), key="video", redis=redis, wall_clock=wall)
    second = RollingWindowLimiter(LimiterOptions(max=2, duration_ms=60000), key="video", redis=redis, wall_clock=wall)

    await first.record_start()
    assert await second.wait_time() == 0.0
    await second.record_start()

    # each local window holds one start, but the shared counter is full
    assert first.delay_seconds() == 0.0
    assert await first.wait_time() == pytest.approx(60.0)
    assert list(redis.expiries.values()) == [60]


@pytest.mark.anyio("asyncio")
async def test_redis_errors_fall_back_to_local_window() -> None:
    limiter = RollingWindowLimiter(LimiterOptions(max=1, duration_ms=1000), key="video", redis=_BrokenRedisStub())

    assert await limiter.wait_time() == 0.0
    await limiter.record_start()
    assert await limiter.wait_time() > 0.0
    limiter.reset()
    assert await limiter.wait_time() == 0.0
