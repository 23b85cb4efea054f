"""
客户端限流器 - 按窗口整量补充的令牌桶

算法:
1. 每次调用计算 elapsed = now - last_refill
2. elapsed >= window 时补充 floor(elapsed / window) * capacity 个令牌（不超过 capacity），
   并将 last_refill 推进到 now
3. tokens > 0 则扣减并放行，否则拒绝并给出 retry_after

注意:
- 令牌按整窗口补充，而不是连续滴灌。窗口边界附近突发后会出现"补充不足"，
  这是已知且保留的行为。
- 无法识别客户端时统一落到 "unknown" 键，所有这类调用方共享同一个桶。
  这是刻意的粗粒度回退，不是 bug。

并发:
桶存储按 hash(key) 分片，每个分片一把 asyncio.Lock，同一个键的读改写在分片锁内完成；
后台清理逐个分片持锁，单次持锁时间以一个分片为上限。
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from src.config.constants import RateLimitDefaults
from src.core.logger import logger
from src.utils.periodic import PeriodicTask


@dataclass
class RateLimitBucket:
    """单个客户端键的令牌桶，始终满足 0 <= tokens <= capacity"""

    key: str
    tokens: int
    last_refill: float
    capacity: int
    window_seconds: float

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed < self.window_seconds:
            return
        windows = math.floor(elapsed / self.window_seconds)
        self.tokens = min(self.capacity, self.tokens + windows * self.capacity)
        self.last_refill = now

    @property
    def reset_at(self) -> float:
        return self.last_refill + self.window_seconds


@dataclass(frozen=True)
class RateLimitDecision:
    """一次限流检查的结果"""

    allowed: bool
    remaining: int
    limit: int
    reset_at: float  # epoch 秒
    retry_after_seconds: int | None = None

    def headers(self) -> dict[str, str]:
        """调用方写入响应的限流头"""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": datetime.fromtimestamp(
                self.reset_at, tz=timezone.utc
            ).isoformat(),
        }
        if not self.allowed and self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class _Shard:
    __slots__ = ("lock", "buckets")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.buckets: dict[str, RateLimitBucket] = {}


class RateLimiter:
    """按客户端键的准入控制"""

    def __init__(
        self,
        capacity: int = RateLimitDefaults.REQUESTS_PER_WINDOW,
        window_seconds: float = RateLimitDefaults.WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
        shards: int = RateLimitDefaults.LOCK_SHARDS,
        cleanup_interval_seconds: float = RateLimitDefaults.CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if shards <= 0:
            raise ValueError("shards must be positive")

        self.capacity = capacity
        self.window_seconds = window_seconds
        self._clock = clock
        self._shards = [_Shard() for _ in range(shards)]
        self._cleanup_task = PeriodicTask(
            "rate_limit_cleanup", cleanup_interval_seconds, self.sweep
        )

    @staticmethod
    def normalize_key(key: str | None) -> str:
        if key is None:
            return RateLimitDefaults.FALLBACK_KEY
        key = str(key).strip()
        return key or RateLimitDefaults.FALLBACK_KEY

    def _shard_for(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    async def check_and_consume(self, key: str | None) -> RateLimitDecision:
        """
        检查并消耗一个令牌

        Args:
            key: 客户端标识（通常为 IP），None/空串回退到 "unknown"

        Returns:
            RateLimitDecision
        """
        key = self.normalize_key(key)
        shard = self._shard_for(key)

        async with shard.lock:
            now = self._clock()
            bucket = shard.buckets.get(key)
            if bucket is None:
                bucket = RateLimitBucket(
                    key=key,
                    tokens=self.capacity,
                    last_refill=now,
                    capacity=self.capacity,
                    window_seconds=self.window_seconds,
                )
                shard.buckets[key] = bucket

            bucket.refill(now)

            if bucket.tokens > 0:
                bucket.tokens -= 1
                return RateLimitDecision(
                    allowed=True,
                    remaining=bucket.tokens,
                    limit=self.capacity,
                    reset_at=bucket.reset_at,
                )

            retry_after = max(1, math.ceil(bucket.reset_at - now))
            decision = RateLimitDecision(
                allowed=False,
                remaining=0,
                limit=self.capacity,
                reset_at=bucket.reset_at,
                retry_after_seconds=retry_after,
            )

        logger.warning("[WARN] 限流拒绝: key={}, retry_after={}s", key, retry_after)
        return decision

    async def peek(self, key: str | None) -> RateLimitBucket | None:
        """返回桶的快照（不消耗令牌），不存在时返回 None"""
        key = self.normalize_key(key)
        shard = self._shard_for(key)
        async with shard.lock:
            bucket = shard.buckets.get(key)
            return replace(bucket) if bucket is not None else None

    async def reset(self, key: str | None = None) -> None:
        """重置指定键，key 为 None 时清空全部桶"""
        if key is None:
            for shard in self._shards:
                async with shard.lock:
                    shard.buckets.clear()
            return

        key = self.normalize_key(key)
        shard = self._shard_for(key)
        async with shard.lock:
            shard.buckets.pop(key, None)

    async def sweep(self) -> int:
        """
        清理空闲超过 2 个窗口的桶

        逐个分片持锁，请求路径最多等待一个分片的清理时间。

        Returns:
            清理的桶数量
        """
        idle_limit = self.window_seconds * RateLimitDefaults.IDLE_WINDOWS_BEFORE_EVICTION
        removed = 0
        for shard in self._shards:
            async with shard.lock:
                now = self._clock()
                expired = [
                    key
                    for key, bucket in shard.buckets.items()
                    if now - bucket.last_refill > idle_limit
                ]
                for key in expired:
                    del shard.buckets[key]
                removed += len(expired)

        if removed:
            logger.debug("[CLEANUP] 清理了 {} 个空闲限流桶", removed)
        return removed

    def bucket_count(self) -> int:
        return sum(len(shard.buckets) for shard in self._shards)

    def start(self) -> None:
        """启动后台清理任务"""
        self._cleanup_task.start()

    async def dispose(self) -> None:
        """停止后台清理并释放所有桶"""
        await self._cleanup_task.stop()
        await self.reset()
