import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.config import Config
from src.core.exceptions import ClassifiedError, OperationCancelledError
from src.models.generation import GenerationOptions, GenerationRequest, ImageSize
from src.services.orchestration.generator import GenerationOrchestrator
from src.services.orchestration.retry import RetryExecutor, RetryHooks
from src.services.orchestration.service import ImageGenerationService
from src.services.provider.base import ImageProvider, ProviderImage


class SlowProvider(ImageProvider):
    def __init__(self) -> None:
        self.calls = 0
        self.release = asyncio.Event()

    async def invoke(self, prompt: str, seed: int, image_size: ImageSize) -> ProviderImage:
        self.calls += 1
        await self.release.wait()
        return ProviderImage(url=f"https://img/{seed}.png", seed=seed)


def _service(provider: ImageProvider) -> ImageGenerationService:
    retry = RetryExecutor(max_attempts=2, base_delay_ms=1, sleep=AsyncMock(), rand=lambda: 0.0)
    return ImageGenerationService(GenerationOrchestrator(provider, retry_executor=retry))


class TestImageGenerationService:
    @pytest.mark.asyncio
    async def test_identical_concurrent_requests_share_upstream_calls(self) -> None:
        provider = SlowProvider()
        service = _service(provider)
        options = GenerationOptions(seed=7, num_images=2)

        first = asyncio.create_task(service.generate(GenerationRequest(prompt="A Cat", options=options)))
        second = asyncio.create_task(
            service.generate(GenerationRequest(prompt="  a cat", options=options))
        )
        await asyncio.sleep(0.01)
        provider.release.set()

        a, b = await asyncio.gather(first, second)
        assert a is b
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_cached_result_skips_provider(self) -> None:
        provider = SlowProvider()
        provider.release.set()
        service = _service(provider)
        request = GenerationRequest(prompt="dog", options=GenerationOptions(seed=1, num_images=1))

        first = await service.generate(request)
        second = await service.generate(request)

        assert first is second
        assert provider.calls == 1

        refreshed = await service.generate(request, force_refresh=True)
        assert refreshed is not first
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self) -> None:
        provider = MagicMock(spec=ImageProvider)
        provider.invoke = AsyncMock(
            side_effect=[
                RuntimeError("Unauthorized"),
                ProviderImage(url="https://img/ok.png"),
            ]
        )
        service = _service(provider)
        request = GenerationRequest(prompt="dog", options=GenerationOptions(num_images=1))

        with pytest.raises(ClassifiedError):
            await service.generate(request)
        result = await service.generate(request)
        assert result.images == ["https://img/ok.png"]

    @pytest.mark.asyncio
    async def test_from_config_wires_settings(self) -> None:
        cfg = Config(
            provider_api_key="k",
            retry_base_delay_ms=250,
            generation_retry_attempts=3,
            provider_timeout_seconds=12.0,
            model_version="flux/schnell",
            images_per_generation=2,
            dedup_ttl_seconds=30,
            dedup_max_entries=7,
        )
        on_retry = MagicMock()
        service = ImageGenerationService.from_config(
            cfg, MagicMock(spec=ImageProvider), hooks=RetryHooks(on_retry=on_retry)
        )

        orchestrator = service.orchestrator
        assert orchestrator.retry_executor.max_attempts == 3
        assert orchestrator.retry_executor.base_delay_ms == 250
        assert orchestrator.retry_executor.hooks.on_retry is on_retry
        assert orchestrator.batch_attempts == 3
        assert orchestrator.timeout_seconds == 12.0
        assert orchestrator.model_version == "flux/schnell"
        assert orchestrator.default_num_images == 2
        assert service.deduplicator.ttl_seconds == 30
        assert service.deduplicator.max_entries == 7

        service.start()
        await service.dispose()

    @pytest.mark.asyncio
    async def test_configured_attempts_bound_provider_calls(self) -> None:
        cfg = Config(
            provider_api_key="k",
            retry_base_delay_ms=1,
            generation_retry_attempts=3,
            images_per_generation=2,
        )
        provider = MagicMock(spec=ImageProvider)
        provider.invoke = AsyncMock(side_effect=RuntimeError("server exploded"))
        service = ImageGenerationService.from_config(cfg, provider)

        with pytest.raises(ClassifiedError):
            await service.generate(GenerationRequest(prompt="dog"))

        assert provider.invoke.await_count == 3 * 2

    @pytest.mark.asyncio
    async def test_cancel_event_only_releases_its_own_caller(self) -> None:
        """先到的调用方断开后，相同请求的其他调用方仍拿到结果"""
        provider = SlowProvider()
        service = _service(provider)
        request = GenerationRequest(prompt="cat", options=GenerationOptions(seed=3, num_images=2))
        first_event = asyncio.Event()
        second_event = asyncio.Event()

        first = asyncio.create_task(service.generate(request, cancel_event=first_event))
        second = asyncio.create_task(service.generate(request, cancel_event=second_event))
        await asyncio.sleep(0.01)

        first_event.set()
        with pytest.raises(OperationCancelledError):
            await first

        provider.release.set()
        result = await second
        assert result.images == ["https://img/3.png", "https://img/4.png"]
        assert provider.calls == 2
