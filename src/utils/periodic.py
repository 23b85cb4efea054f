"""
可取消的后台周期任务

用于限流桶清理、去重缓存过期清理等维护工作，持有显式的 stop 句柄。
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from src.core.logger import logger


class PeriodicTask:
    """按固定间隔执行回调的 asyncio 后台任务"""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[Any] | Any],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """启动后台循环（需要在事件循环内调用，重复调用无副作用）"""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.debug("[OK] 后台任务 {} 已启动，间隔 {}s", self.name, self.interval_seconds)

    async def stop(self) -> None:
        """停止后台循环并等待其退出"""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("后台任务 {} 已停止", self.name)

    async def run_once(self) -> None:
        result = self._callback()
        if inspect.isawaitable(result):
            await result

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception as e:
                # 单次失败不终止循环
                logger.warning("后台任务 {} 执行异常: {}", self.name, e)
