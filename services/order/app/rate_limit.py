"""
Order Service: API キー発行のレート制限

アカウントごとに 1 時間あたり 5 回まで発行を許可する固定ウィンドウ方式。

  MemoryRateLimiter : プロセス内の dict で数える (単一インスタンス向け)
  RedisRateLimiter  : Redis の共有カウンタで数える (複数インスタンス向け)

どちらも超過時は例外ではなく allowed=False と reset_at を返す。
"""

import asyncio
import logging
import time
from typing import Callable

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

KEY_GENERATION_LIMIT = 5
KEY_GENERATION_WINDOW = 60 * 60


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int
    reset_at: float


class MemoryRateLimiter:
    """プロセス内カウンタ。ウィンドウ経過後の最初の呼び出しでリセットする。"""

    def __init__(
        self,
        limit: int = KEY_GENERATION_LIMIT,
        window: int = KEY_GENERATION_WINDOW,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limit = limit
        self.window = window
        self.clock = clock
        self._records: dict[str, dict] = {}

    async def check(self, account_id: str) -> RateLimitDecision:
        now = self.clock()
        record = self._records.get(account_id)

        if record is None or now > record["reset_at"]:
            reset_at = now + self.window
            self._records[account_id] = {"count": 1, "reset_at": reset_at}
            return RateLimitDecision(allowed=True, remaining=self.limit - 1, reset_at=reset_at)

        if record["count"] >= self.limit:
            return RateLimitDecision(allowed=False, remaining=0, reset_at=record["reset_at"])

        record["count"] += 1
        return RateLimitDecision(
            allowed=True,
            remaining=self.limit - record["count"],
            reset_at=record["reset_at"],
        )

    def cleanup(self) -> int:
        """期限切れのレコードを削除し、削除件数を返す。"""
        now = self.clock()
        expired = [key for key, record in self._records.items() if now > record["reset_at"]]
        for key in expired:
            del self._records[key]
        return len(expired)


class RedisRateLimiter:
    """
    アカウント + ウィンドウ単位の共有カウンタ。

    最初の INCR でキーに TTL を付け、TTL が切れればウィンドウもリセットされる。
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        limit: int = KEY_GENERATION_LIMIT,
        window: int = KEY_GENERATION_WINDOW,
        namespace: str = "api_key_generation",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis = redis
        self.limit = limit
        self.window = window
        self.namespace = namespace
        self.clock = clock

    async def check(self, account_id: str) -> RateLimitDecision:
        key = f"{self.namespace}:{account_id}"
        count = await self.redis.incr(key)
        if count == 1:
            await self.redis.expire(key, self.window)
        ttl = await self.redis.ttl(key)
        if ttl < 0:
            # TTL 付与前に落ちたキーを救済する
            await self.redis.expire(key, self.window)
            ttl = self.window
        reset_at = self.clock() + ttl

        if count > self.limit:
            return RateLimitDecision(allowed=False, remaining=0, reset_at=reset_at)
        return RateLimitDecision(allowed=True, remaining=self.limit - count, reset_at=reset_at)

    def cleanup(self) -> int:
        # Redis 側は TTL で消える
        return 0


async def run_sweeper(
    limiter: MemoryRateLimiter | RedisRateLimiter,
    shutdown_event: asyncio.Event,
    interval: float = KEY_GENERATION_WINDOW,
) -> None:
    """shutdown_event がセットされるまで interval ごとに期限切れレコードを掃除する。"""
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            removed = limiter.cleanup()
            if removed:
                logger.info("Swept %d expired rate limit records", removed)
