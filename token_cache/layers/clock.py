"""
时间抽象
所有组件通过注入的 Clock 读取时间与休眠，测试中使用 ManualClock 模拟时间流逝
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional


class Clock:
    """系统时钟"""

    def now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock(Clock):
    """手动推进的时钟：sleep 立即返回并推进虚拟时间"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._mono = 0.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now = self._now + timedelta(seconds=seconds)
        self._mono += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        # 让出事件循环，保持与真实 sleep 相同的调度语义
        await asyncio.sleep(0)
