"""
请求去重器

按规范化请求键共享结果：
- 缓存中有未过期结果 -> 直接返回，不执行 operation
- 同一键已有进行中的任务 -> 等待同一个任务（同一键同时最多一个进行中的上游调用）
- 否则注册新任务，成功结果缓存 TTL（默认 5 分钟），失败不缓存，finally 清理进行中槽位

缓存容量有限，满时按插入顺序淘汰最旧条目。

取消: 等待方通过 asyncio.shield 等待共享任务，每个等待方可以传入自己的 cancel_event。
单个等待方被取消（协程被 cancel 或其 cancel_event 被设置）只影响它自己，
最后一个等待方离开时才取消底层任务。
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from src.config.constants import DedupDefaults
from src.core.exceptions import OperationCancelledError
from src.core.logger import logger
from src.models.generation import GenerationRequest
from src.utils.periodic import PeriodicTask

T = TypeVar("T")

KeyParts = str | tuple[str, Mapping[str, Any] | None] | GenerationRequest


def normalize_key(prompt: str, options: Mapping[str, Any] | None = None) -> str:
    """
    构建去重键: 去首尾空白并小写的 prompt + 排序后的选项 JSON

    值为 None 的选项不参与计算，{"seed": None} 与 {} 得到相同的键。
    """
    normalized_prompt = prompt.strip().lower()
    cleaned = {k: v for k, v in (options or {}).items() if v is not None}
    if not cleaned:
        return normalized_prompt
    canonical = json.dumps(cleaned, sort_keys=True, separators=(",", ":"), default=str)
    return f"{normalized_prompt}|{canonical}"


def key_from_parts(key_parts: KeyParts) -> str:
    if isinstance(key_parts, GenerationRequest):
        return normalize_key(key_parts.prompt, key_parts.options.cache_parts())
    if isinstance(key_parts, tuple):
        prompt, options = key_parts
        return normalize_key(prompt, options)
    return normalize_key(key_parts)


@dataclass
class CacheEntry(Generic[T]):
    """缓存条目"""

    key: str
    result: T
    inserted_at: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class _Pending:
    """进行中的共享任务及其等待方计数"""

    __slots__ = ("task", "waiters")

    def __init__(self, task: asyncio.Task) -> None:
        self.task = task
        self.waiters = 0


class Deduplicator(Generic[T]):
    """结果缓存 + 进行中请求合并"""

    def __init__(
        self,
        ttl_seconds: float = DedupDefaults.TTL_SECONDS,
        max_entries: int = DedupDefaults.MAX_ENTRIES,
        *,
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval_seconds: float = DedupDefaults.CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")

        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()
        self._cache: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._pending: dict[str, _Pending] = {}
        self._hits = 0
        self._misses = 0
        self._joins = 0
        self._cleanup_task = PeriodicTask(
            "dedup_cache_cleanup", cleanup_interval_seconds, self.sweep
        )

    async def get_or_run(
        self,
        key_parts: KeyParts,
        operation: Callable[[], Awaitable[T]],
        *,
        force_refresh: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """
        获取缓存结果，或执行/加入 operation

        Args:
            key_parts: prompt 字符串、(prompt, options) 元组或 GenerationRequest
            operation: 无参协程工厂，仅在缓存未命中且无进行中任务时调用
            force_refresh: 跳过缓存读取（仍会合并进行中的请求）
            cancel_event: 本调用方的取消信号，只让本调用方退出等待

        Returns:
            operation 的结果；并发调用方拿到同一个对象

        Raises:
            OperationCancelledError: 本调用方的 cancel_event 被设置
        """
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError()

        key = key_from_parts(key_parts)

        async with self._lock:
            now = self._clock()
            entry = self._cache.get(key)
            if entry is not None and not force_refresh:
                if entry.is_fresh(now):
                    self._hits += 1
                    logger.debug("去重缓存命中: {}", key[:80])
                    return entry.result
                del self._cache[key]

            pending = self._pending.get(key)
            if pending is not None:
                self._joins += 1
                logger.debug("加入进行中的生成任务: {}", key[:80])
            else:
                self._misses += 1
                task = asyncio.ensure_future(self._execute(key, operation))
                pending = _Pending(task)
                self._pending[key] = pending
            pending.waiters += 1

        try:
            return await self._wait(pending.task, cancel_event)
        except (asyncio.CancelledError, OperationCancelledError):
            # 仅当所有等待方都放弃时才取消上游调用
            if pending.waiters <= 1 and not pending.task.done():
                logger.debug("最后一个等待方已离开，取消生成任务: {}", key[:80])
                pending.task.cancel()
                # 之后到达的调用方重新发起，不加入已取消的任务
                if self._pending.get(key) is pending:
                    del self._pending[key]
            raise
        finally:
            pending.waiters -= 1

    @staticmethod
    async def _wait(task: asyncio.Future, cancel_event: asyncio.Event | None) -> T:
        """等待共享任务，cancel_event 先到时只放弃本次等待"""
        shielded = asyncio.shield(task)
        if cancel_event is None:
            return await shielded

        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({shielded, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            shielded.cancel()
            raise
        finally:
            waiter.cancel()

        if shielded.done():
            return shielded.result()

        shielded.cancel()
        raise OperationCancelledError()

    async def _execute(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await operation()
            async with self._lock:
                self._store(key, result)
            return result
        finally:
            # 成功/失败/取消都要释放进行中槽位（只释放属于本任务的槽位）
            pending = self._pending.get(key)
            if pending is not None and pending.task is asyncio.current_task():
                del self._pending[key]

    def _store(self, key: str, result: T) -> None:
        """写入缓存（需持有 _lock）"""
        now = self._clock()
        if key in self._cache:
            del self._cache[key]
        while len(self._cache) >= self.max_entries:
            evicted_key, _ = self._cache.popitem(last=False)
            logger.debug("去重缓存已满，淘汰最旧条目: {}", evicted_key[:80])
        self._cache[key] = CacheEntry(
            key=key,
            result=result,
            inserted_at=now,
            expires_at=now + self.ttl_seconds,
        )

    async def invalidate(self, key_parts: KeyParts) -> bool:
        """失效指定键的缓存，返回是否存在"""
        key = key_from_parts(key_parts)
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def sweep(self) -> int:
        """清理过期条目，返回清理数量"""
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._cache.items() if not entry.is_fresh(now)]
            for key in expired:
                del self._cache[key]

        if expired:
            logger.debug("[CLEANUP] 清理了 {} 个过期去重缓存", len(expired))
        return len(expired)

    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._cache),
            "pending": len(self._pending),
            "hits": self._hits,
            "misses": self._misses,
            "joins": self._joins,
        }

    async def reset(self) -> None:
        """清空缓存与统计（不影响进行中的任务）"""
        async with self._lock:
            self._cache.clear()
            self._hits = self._misses = self._joins = 0

    def start(self) -> None:
        self._cleanup_task.start()

    async def dispose(self) -> None:
        """停止后台清理，取消进行中的任务并清空缓存"""
        await self._cleanup_task.stop()
        tasks = [pending.task for pending in self._pending.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
        await self.reset()
