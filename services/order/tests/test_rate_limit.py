import asyncio
from unittest.mock import AsyncMock

from app.rate_limit import MemoryRateLimiter, RedisRateLimiter, run_sweeper


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def test_sixth_key_in_window_is_rejected():
    clock = FakeClock()
    limiter = MemoryRateLimiter(clock=clock)

    decisions = [await limiter.check("user-1") for _ in range(5)]
    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0]

    sixth = await limiter.check("user-1")
    assert not sixth.allowed
    assert sixth.remaining == 0
    assert sixth.reset_at == clock.now + 3600


async def test_window_reset_allows_again():
    clock = FakeClock()
    limiter = MemoryRateLimiter(clock=clock)
    for _ in range(5):
        await limiter.check("user-1")
    assert not (await limiter.check("user-1")).allowed

    clock.now += 3601
    decision = await limiter.check("user-1")
    assert decision.allowed
    assert decision.remaining == 4


async def test_accounts_are_counted_separately():
    limiter = MemoryRateLimiter(clock=FakeClock())
    for _ in range(5):
        await limiter.check("user-1")
    assert (await limiter.check("user-2")).allowed


async def test_cleanup_sweeps_only_expired_records():
    clock = FakeClock()
    limiter = MemoryRateLimiter(clock=clock)
    await limiter.check("old")
    clock.now += 3000
    await limiter.check("fresh")
    clock.now += 700

    assert limiter.cleanup() == 1
    assert limiter.cleanup() == 0
    assert (await limiter.check("fresh")).remaining == 3


async def test_sweeper_stops_on_shutdown():
    limiter = MemoryRateLimiter()
    shutdown_event = asyncio.Event()
    task = asyncio.create_task(run_sweeper(limiter, shutdown_event, interval=0.01))
    await asyncio.sleep(0.05)
    shutdown_event.set()
    await asyncio.wait_for(task, timeout=1)
    assert task.done()


async def test_redis_limiter_uses_shared_counter():
    redis = AsyncMock()
    redis.incr.side_effect = [1, 2, 3, 4, 5, 6]
    redis.ttl.return_value = 1200
    clock = FakeClock()
    limiter = RedisRateLimiter(redis, clock=clock)

    decisions = [await limiter.check("user-1") for _ in range(6)]

    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert decisions[0].remaining == 4
    assert decisions[-1].reset_at == clock.now + 1200
    redis.incr.assert_awaited_with("api_key_generation:user-1")
    redis.expire.assert_awaited_once_with("api_key_generation:user-1", 3600)
