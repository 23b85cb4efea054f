"""
生成编排器 - 单请求扇出 N 个并行上游调用

流程:
1. n = options.num_images 或默认值；base_seed = options.seed 或随机
2. 并发发起 n 个子请求，第 i 个使用 seed = base_seed + i，每个子请求有独立超时
3. 等待全部完成（不短路），收集成功的 URL，丢弃失败/空结果
4. 全部失败 -> generation 错误（可重试）；部分失败 -> 记录降级日志并作为成功结果返回
5. 整个扇出作为一个整体交给 RetryExecutor（默认 2 次），系统性故障整批重试而不是逐张重试

结果顺序: 子请求带索引，结果按 seed 顺序（提交顺序）重组，失败的位置被跳过。

取消: 取消信号由 RetryExecutor 监听，取消整批扇出任务时所有子请求随之取消，
已完成的部分结果被丢弃。
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable
from uuid import uuid4

from src.config.constants import GenerationDefaults
from src.core.exceptions import ClassifiedError, ErrorCategory
from src.core.logger import logger
from src.models.generation import (
    GenerationMetadata,
    GenerationRequest,
    GenerationResult,
    ImageSize,
)
from src.services.orchestration.error_classifier import classify
from src.services.orchestration.retry import RetryExecutor
from src.services.provider.base import ImageProvider, ProviderImage


def new_generation_id() -> str:
    return f"gen_{int(time.time() * 1000)}_{uuid4().hex[:8]}"


def _random_seed() -> int:
    return random.randrange(GenerationDefaults.SEED_RANGE)


class GenerationOrchestrator:
    """扇出生成 + 部分失败容忍"""

    def __init__(
        self,
        provider: ImageProvider,
        *,
        retry_executor: RetryExecutor | None = None,
        timeout_seconds: float = GenerationDefaults.PROVIDER_TIMEOUT_SECONDS,
        model_version: str = GenerationDefaults.MODEL_VERSION,
        batch_attempts: int = GenerationDefaults.BATCH_RETRY_ATTEMPTS,
        default_num_images: int = GenerationDefaults.IMAGES_PER_GENERATION,
        seed_source: Callable[[], int] = _random_seed,
    ) -> None:
        self.provider = provider
        self.retry_executor = retry_executor or RetryExecutor()
        self.timeout_seconds = timeout_seconds
        self.model_version = model_version
        self.batch_attempts = batch_attempts
        self.default_num_images = default_num_images
        self._seed_source = seed_source

    async def generate(
        self,
        request: GenerationRequest,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> GenerationResult:
        """
        生成图片

        Raises:
            ClassifiedError: 全部子请求失败且重试耗尽，或遇到不可重试错误
            OperationCancelledError: 收到取消信号
        """
        started = time.perf_counter()
        options = request.options
        num_images = options.num_images or self.default_num_images
        base_seed = options.seed if options.seed is not None else self._seed_source()
        image_size = options.image_size or ImageSize()

        logger.info(
            "开始生成: {} 张, base_seed={}, size={}x{}, prompt={!r}",
            num_images,
            base_seed,
            image_size.width,
            image_size.height,
            request.prompt[:80],
        )

        images = await self.retry_executor.run(
            lambda: self._fan_out(request.prompt, num_images, base_seed, image_size),
            max_attempts=self.batch_attempts,
            cancel_event=cancel_event,
            context={"prompt": request.prompt[:100], "num_images": num_images},
        )

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info("生成完成: {}/{} 张, 耗时 {}ms", len(images), num_images, elapsed_ms)

        return GenerationResult(
            images=images,
            metadata=GenerationMetadata(
                prompt=request.prompt,
                generation_time_ms=elapsed_ms,
                model_version=self.model_version,
                images_count=len(images),
                requested_count=num_images,
            ),
            generation_id=new_generation_id(),
        )

    async def _fan_out(
        self,
        prompt: str,
        num_images: int,
        base_seed: int,
        image_size: ImageSize,
    ) -> list[str]:
        """一次完整扇出，返回按 seed 顺序排列的成功 URL"""
        outcomes = await asyncio.gather(
            *(
                self._invoke_one(index, prompt, base_seed + index, image_size)
                for index in range(num_images)
            ),
            return_exceptions=True,
        )

        urls: list[str] = []
        failures: list[ClassifiedError] = []
        empty_results = 0

        for index, outcome in enumerate(outcomes):
            seed = base_seed + index
            if isinstance(outcome, BaseException):
                error = classify(outcome, {"index": index, "seed": seed})
                failures.append(error)
                logger.warning(
                    "第 {} 张图片生成失败 (seed={}): [{}] {}",
                    index + 1,
                    seed,
                    error.category.value,
                    error.message,
                )
            elif outcome is None or not outcome.url:
                empty_results += 1
                logger.warning("第 {} 张图片结果无效 (seed={})", index + 1, seed)
            else:
                logger.debug("第 {} 张图片生成成功 (seed={})", index + 1, seed)
                urls.append(outcome.url)

        if not urls:
            raise self._total_failure(num_images, failures, empty_results)

        if len(urls) < num_images:
            logger.warning("部分生成失败: 仅 {}/{} 张图片生成成功", len(urls), num_images)

        return urls

    async def _invoke_one(
        self,
        index: int,
        prompt: str,
        seed: int,
        image_size: ImageSize,
    ) -> ProviderImage | None:
        logger.debug("生成第 {} 张图片, seed={}", index + 1, seed)
        try:
            return await asyncio.wait_for(
                self.provider.invoke(prompt, seed, image_size),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise TimeoutError(f"Request timeout after {self.timeout_seconds}s")

    @staticmethod
    def _total_failure(
        num_images: int,
        failures: list[ClassifiedError],
        empty_results: int,
    ) -> ClassifiedError:
        """
        构造全部失败时抛出的错误

        所有子请求都抛出了不可重试错误（如认证失败）时原样传递该分类，
        否则归为可重试的 generation 错误。
        """
        if failures and empty_results == 0 and all(not e.retryable for e in failures):
            return failures[0]

        return ClassifiedError(
            message="No images were generated successfully",
            category=ErrorCategory.GENERATION,
            retryable=True,
            context={
                "requested": num_images,
                "empty_results": empty_results,
                "failure_categories": [e.category.value for e in failures],
            },
        )
