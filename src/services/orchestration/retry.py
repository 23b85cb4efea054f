"""
重试执行器 - 指数退避 + 抖动

- 每次失败只分类一次，依据 retryable 决定是否重试
- 不可重试或已是最后一次尝试时立即抛出 ClassifiedError（不再等待）
- 延迟: min(base_delay * 2^(attempt-1) * (1 + jitter), max_delay)，jitter ∈ [0, jitter_ratio]
- 取消信号（asyncio.Event）会中止进行中的操作和等待中的退避，抛出 OperationCancelledError
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from src.config.constants import RetryDefaults
from src.core.exceptions import ClassifiedError, OperationCancelledError
from src.core.logger import logger
from src.services.orchestration.error_classifier import classify

T = TypeVar("T")


def _noop(*_args: Any) -> None:
    return None


@dataclass(frozen=True)
class RetryHooks:
    """状态迁移回调，构造时传入"""

    on_retry: Callable[[int, int], None] = _noop
    on_success: Callable[[Any, int], None] = _noop
    on_error: Callable[[ClassifiedError, dict[str, Any]], None] = _noop


class RetryExecutor:
    """按错误分类决定是否重试的执行器"""

    def __init__(
        self,
        max_attempts: int = RetryDefaults.MAX_ATTEMPTS,
        base_delay_ms: int = RetryDefaults.BASE_DELAY_MS,
        *,
        hooks: RetryHooks | None = None,
        max_delay_ms: int = RetryDefaults.MAX_DELAY_MS,
        jitter_ratio: float = RetryDefaults.JITTER_RATIO,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_ratio = jitter_ratio
        self.hooks = hooks or RetryHooks()
        self._sleep = sleep
        self._rand = rand

    def compute_delay(self, attempt: int, base_delay_ms: int | None = None) -> float:
        """
        计算第 attempt 次失败后的等待时间（毫秒）

        Args:
            attempt: 已失败的次数（从 1 开始）
        """
        base = self.base_delay_ms if base_delay_ms is None else base_delay_ms
        jitter = self._rand() * self.jitter_ratio
        delay = base * (2 ** (attempt - 1)) * (1 + jitter)
        return min(delay, self.max_delay_ms)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        cancel_event: asyncio.Event | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> T:
        """
        执行 operation，失败时按分类重试

        Args:
            operation: 无参协程工厂，每次尝试调用一次
            max_attempts: 最多调用次数，默认使用构造参数
            base_delay_ms: 基础延迟，默认使用构造参数
            cancel_event: 外部取消信号
            context: 写入错误上下文的附加信息

        Returns:
            operation 的返回值

        Raises:
            ClassifiedError: 不可重试或重试耗尽
            OperationCancelledError: 收到取消信号
        """
        attempts_budget = self.max_attempts if max_attempts is None else max_attempts
        if attempts_budget < 1:
            raise ValueError("max_attempts must be >= 1")
        base_context = dict(context or {})

        for attempt in range(1, attempts_budget + 1):
            self._raise_if_cancelled(cancel_event)

            if attempt > 1:
                self.hooks.on_retry(attempt - 1, attempts_budget)

            try:
                result = await self._await_cancellable(operation(), cancel_event)
            except OperationCancelledError:
                raise
            except Exception as exc:
                error = classify(exc, base_context)
                error_context = {
                    **base_context,
                    "attempt": attempt,
                    "max_attempts": attempts_budget,
                }

                if not error.retryable or attempt >= attempts_budget:
                    if error.retryable:
                        logger.error(
                            "重试耗尽: {} 次尝试后仍失败 [{}] {}",
                            attempt,
                            error.category.value,
                            error.message,
                        )
                    else:
                        logger.warning(
                            "不可重试错误 [{}]: {}", error.category.value, error.message
                        )
                    self.hooks.on_error(error, error_context)
                    if error is exc:
                        raise
                    raise error from exc

                delay_ms = self.compute_delay(attempt, base_delay_ms)
                logger.warning(
                    "第 {}/{} 次尝试失败 [{}]: {}，{:.0f}ms 后重试",
                    attempt,
                    attempts_budget,
                    error.category.value,
                    error.message,
                    delay_ms,
                )
                await self._await_cancellable(self._sleep(delay_ms / 1000), cancel_event)
                continue

            self.hooks.on_success(result, attempt)
            return result

        # 循环内必然 return 或 raise
        raise AssertionError("unreachable")  # pragma: no cover

    @staticmethod
    def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError()

    @staticmethod
    async def _await_cancellable(
        awaitable: Awaitable[T], cancel_event: asyncio.Event | None
    ) -> T:
        """等待 awaitable，取消信号先到时取消它并抛出 OperationCancelledError"""
        if cancel_event is None:
            return await awaitable

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass
        raise OperationCancelledError()
