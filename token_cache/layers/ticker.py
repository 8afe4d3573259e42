"""
定时调度抽象
Ticker：按固定间隔等待，可被提前唤醒
PeriodicTask：由 Ticker 驱动的可取消后台循环
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from token_cache.layers.clock import Clock

logger = logging.getLogger(__name__)

TICK = "tick"
WAKE = "wake"


class Ticker:
    """间隔计时器，wake() 可让当前等待提前结束"""

    def __init__(self, interval: float, clock: Clock):
        self.interval = interval
        self._clock = clock
        self._wake = asyncio.Event()

    def wake(self) -> None:
        self._wake.set()

    async def wait(self) -> str:
        """等待下一次触发，返回触发原因 tick / wake"""
        if self._wake.is_set():
            self._wake.clear()
            return WAKE
        sleeper = asyncio.ensure_future(self._clock.sleep(self.interval))
        waker = asyncio.ensure_future(self._wake.wait())
        try:
            done, _ = await asyncio.wait(
                {sleeper, waker}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for fut in (sleeper, waker):
                if not fut.done():
                    fut.cancel()
        if waker in done:
            self._wake.clear()
            return WAKE
        return TICK


class PeriodicTask:
    """后台周期任务，stop() 通过取消结束循环"""

    def __init__(
        self,
        name: str,
        ticker: Ticker,
        callback: Callable[[], Awaitable[object]],
    ):
        self.name = name
        self.ticker = ticker
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"⏱️ 后台任务已启动: {self.name}（间隔 {self.ticker.interval}s）")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"后台任务已停止: {self.name}")

    async def run_once(self) -> None:
        self.runs += 1
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"后台任务执行失败（{self.name}）: {exc}", exc_info=True)

    async def _loop(self) -> None:
        while True:
            reason = await self.ticker.wait()
            logger.debug(f"后台任务触发（{self.name}）: {reason}")
            await self.run_once()
