"""
限流层
按数据源维护滑动时间窗口的调用预算，所有上游调用都必须先经过这里

后端：
  MemoryRateLimitBackend – 进程内计数（Redis 不可用时的降级模式）
  RedisRateLimitBackend  – 基于 Redis 的分布式计数
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from redis.asyncio import Redis

from token_cache.layers.clock import Clock
from token_cache.models.entities import RateLimitWindow

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    source: str
    retry_after: timedelta = timedelta(0)
    remaining: int = 0
    # 计数状态不可读时放行，调用方需在真实调用后补记 record_usage
    degraded: bool = False


class RateLimitBackend:
    """限流计数后端接口"""

    async def acquire(
        self, source: str, cost: int, limit: int, window_seconds: int, now: datetime
    ) -> Tuple[bool, RateLimitWindow]:
        raise NotImplementedError

    async def add(
        self, source: str, count: int, limit: int, window_seconds: int, now: datetime
    ) -> RateLimitWindow:
        raise NotImplementedError

    async def peek(
        self, source: str, limit: int, window_seconds: int, now: datetime
    ) -> RateLimitWindow:
        raise NotImplementedError


class MemoryRateLimitBackend(RateLimitBackend):
    def __init__(self):
        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = asyncio.Lock()

    def _current(
        self, source: str, limit: int, window_seconds: int, now: datetime
    ) -> RateLimitWindow:
        window = self._windows.get(source)
        if window is None or window.is_expired(now):
            window = RateLimitWindow(
                source=source,
                window_start=now,
                window_seconds=window_seconds,
                requests_made=0,
                requests_limit=limit,
            )
            self._windows[source] = window
        return window

    async def acquire(self, source, cost, limit, window_seconds, now):
        async with self._lock:
            window = self._current(source, limit, window_seconds, now)
            if window.requests_made + cost > window.requests_limit:
                return False, window.model_copy()
            window.requests_made += cost
            return True, window.model_copy()

    async def add(self, source, count, limit, window_seconds, now):
        async with self._lock:
            window = self._current(source, limit, window_seconds, now)
            window.requests_made += count
            return window.model_copy()

    async def peek(self, source, limit, window_seconds, now):
        async with self._lock:
            return self._current(source, limit, window_seconds, now).model_copy()


class RedisRateLimitBackend(RateLimitBackend):
    """
    每个数据源两个键：
      {prefix}:{source}:start  – 窗口起始时间戳
      {prefix}:{source}:count  – 窗口内已发出的请求数
    两个键的 TTL 均为窗口长度，窗口过期后自然重置
    """

    def __init__(self, redis: Redis, prefix: str = "rate_limit"):
        self._redis = redis
        self._prefix = prefix

    def _keys(self, source: str) -> Tuple[str, str]:
        base = f"{self._prefix}:{source}"
        return f"{base}:start", f"{base}:count"

    async def _window_start(self, source: str, window_seconds: int, now: datetime) -> float:
        start_key, count_key = self._keys(source)
        raw = await self._redis.get(start_key)
        start = float(raw) if raw is not None else None
        if start is None or now.timestamp() - start >= window_seconds:
            start = now.timestamp()
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(start_key, start, ex=window_seconds)
                pipe.set(count_key, 0, ex=window_seconds)
                await pipe.execute()
        return start

    def _window(
        self, source: str, start: float, made: int, limit: int, window_seconds: int
    ) -> RateLimitWindow:
        return RateLimitWindow(
            source=source,
            window_start=datetime.fromtimestamp(start, tz=timezone.utc),
            window_seconds=window_seconds,
            requests_made=max(0, int(made)),
            requests_limit=limit,
        )

    async def acquire(self, source, cost, limit, window_seconds, now):
        start = await self._window_start(source, window_seconds, now)
        _, count_key = self._keys(source)
        made = await self._redis.incrby(count_key, cost)
        if made > limit:
            made = await self._redis.decrby(count_key, cost)
            return False, self._window(source, start, made, limit, window_seconds)
        return True, self._window(source, start, made, limit, window_seconds)

    async def add(self, source, count, limit, window_seconds, now):
        start = await self._window_start(source, window_seconds, now)
        _, count_key = self._keys(source)
        made = await self._redis.incrby(count_key, count)
        return self._window(source, start, made, limit, window_seconds)

    async def peek(self, source, limit, window_seconds, now):
        start = await self._window_start(source, window_seconds, now)
        _, count_key = self._keys(source)
        raw = await self._redis.get(count_key)
        return self._window(source, start, int(raw or 0), limit, window_seconds)


class RateLimiter:
    """按数据源的调用预算闸门；内部不做重试，是否延后由调用方决定"""

    def __init__(
        self,
        backend: RateLimitBackend,
        limits: Dict[str, int],
        window_seconds: int,
        clock: Clock,
    ):
        self._backend = backend
        self._limits = dict(limits)
        self._window_seconds = window_seconds
        self._clock = clock

    @property
    def sources(self) -> List[str]:
        return list(self._limits)

    def limit_for(self, source: str) -> int:
        if source not in self._limits:
            raise KeyError(f"未配置限流预算的数据源: {source}")
        return self._limits[source]

    async def try_acquire(self, source: str, cost: int = 1) -> RateLimitDecision:
        """
        原子地检查并占用 cost 个调用额度

        占用成功即计为一次已发起的上游调用；计数后端不可读时放行并标记 degraded
        """
        limit = self.limit_for(source)
        now = self._clock.now()
        try:
            allowed, window = await self._backend.acquire(
                source, cost, limit, self._window_seconds, now
            )
        except Exception as exc:
            logger.warning(f"⚠️ 限流状态读取失败，放行请求（来源：{source}）: {exc}")
            return RateLimitDecision(allowed=True, source=source, degraded=True)

        remaining = max(0, window.requests_limit - window.requests_made)
        if allowed:
            return RateLimitDecision(allowed=True, source=source, remaining=remaining)
        retry_after = max(window.window_end - now, timedelta(0))
        logger.info(
            f"数据源 {source} 已达调用上限 {window.requests_made}/{window.requests_limit}，"
            f"{int(retry_after.total_seconds())}s 后重置"
        )
        return RateLimitDecision(
            allowed=False, source=source, retry_after=retry_after, remaining=0
        )

    async def record_usage(self, source: str, count: int = 1) -> None:
        """补记未经 try_acquire 占用的真实调用次数"""
        if count <= 0:
            return
        try:
            await self._backend.add(
                source, count, self.limit_for(source), self._window_seconds, self._clock.now()
            )
        except Exception as exc:
            logger.warning(f"⚠️ 限流用量记录失败（来源：{source}）: {exc}")

    async def peek(self, source: str) -> Optional[RateLimitWindow]:
        try:
            return await self._backend.peek(
                source, self.limit_for(source), self._window_seconds, self._clock.now()
            )
        except Exception as exc:
            logger.warning(f"⚠️ 限流状态读取失败（来源：{source}）: {exc}")
            return None

    async def has_budget(self, source: str) -> bool:
        window = await self.peek(source)
        return window is None or not window.is_limited

    async def next_available(self, sources: Iterable[str]) -> datetime:
        """给定数据源中最早恢复额度的时间"""
        now = self._clock.now()
        candidates = []
        for source in sources:
            window = await self.peek(source)
            if window is None or not window.is_limited:
                return now
            candidates.append(window.window_end)
        return min(candidates) if candidates else now

    async def snapshot(self) -> List[RateLimitWindow]:
        windows = []
        for source in self._limits:
            window = await self.peek(source)
            if window is not None:
                windows.append(window)
        return windows
