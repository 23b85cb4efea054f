"""
图片生成服务

请求 -> Deduplicator.get_or_run(key)
       -> 缓存命中: 直接返回
       -> 进行中: 加入已有任务
       -> 未命中: GenerationOrchestrator.generate（内部经 RetryExecutor 整批重试）
       -> 成功结果写入缓存
"""

from __future__ import annotations

import asyncio

from src.config import Config
from src.models.generation import GenerationRequest, GenerationResult
from src.services.orchestration.deduplicator import Deduplicator
from src.services.orchestration.generator import GenerationOrchestrator
from src.services.orchestration.retry import RetryExecutor, RetryHooks
from src.services.provider.base import ImageProvider


class ImageGenerationService:
    """组合去重、重试与扇出生成"""

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        deduplicator: Deduplicator[GenerationResult] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.deduplicator: Deduplicator[GenerationResult] = deduplicator or Deduplicator()

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        provider: ImageProvider,
        *,
        hooks: RetryHooks | None = None,
    ) -> ImageGenerationService:
        retry_executor = RetryExecutor(
            max_attempts=cfg.generation_retry_attempts,
            base_delay_ms=cfg.retry_base_delay_ms,
            hooks=hooks,
        )
        orchestrator = GenerationOrchestrator(
            provider,
            retry_executor=retry_executor,
            timeout_seconds=cfg.provider_timeout_seconds,
            model_version=cfg.model_version,
            batch_attempts=cfg.generation_retry_attempts,
            default_num_images=cfg.images_per_generation,
        )
        deduplicator: Deduplicator[GenerationResult] = Deduplicator(
            ttl_seconds=cfg.dedup_ttl_seconds,
            max_entries=cfg.dedup_max_entries,
            cleanup_interval_seconds=cfg.dedup_cleanup_interval_seconds,
        )
        return cls(orchestrator, deduplicator)

    async def generate(
        self,
        request: GenerationRequest,
        *,
        cancel_event: asyncio.Event | None = None,
        force_refresh: bool = False,
    ) -> GenerationResult:
        """
        生成图片（相同规范化请求共享结果）

        cancel_event 只让本调用方退出等待；共享的上游任务在所有等待方都离开后才被取消，
        因此不会把单个调用方的取消信号传给共享任务。

        Raises:
            ClassifiedError: 生成失败
            OperationCancelledError: 本调用方的 cancel_event 被设置
        """
        return await self.deduplicator.get_or_run(
            request,
            lambda: self.orchestrator.generate(request),
            force_refresh=force_refresh,
            cancel_event=cancel_event,
        )

    def start(self) -> None:
        self.deduplicator.start()

    async def dispose(self) -> None:
        await self.deduplicator.dispose()
