"""
应用入口

create_app() 组装限流器、Provider 与生成服务，挂到 app.state 上供路由读取；
lifespan 负责启动/停止后台清理任务并关闭共享 HTTP 客户端。

运行:
    uvicorn src.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.api.public.generate_image import router as generate_image_router
from src.clients.http_client import close_http_clients
from src.config import Config, config as default_config
from src.core.logger import logger
from src.services.orchestration.service import ImageGenerationService
from src.services.provider.base import ImageProvider
from src.services.provider.http_provider import HttpImageProvider
from src.services.rate_limit.limiter import RateLimiter


def create_app(
    config: Config | None = None,
    provider: ImageProvider | None = None,
) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        config: 运行配置，默认使用进程级配置
        provider: 上游图片 Provider，默认按配置构造 HttpImageProvider
    """
    cfg = config or default_config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        rate_limiter = RateLimiter(
            capacity=cfg.rate_limit_per_window,
            window_seconds=cfg.rate_limit_window_seconds,
            cleanup_interval_seconds=cfg.rate_limit_cleanup_interval_seconds,
        )
        service = ImageGenerationService.from_config(
            cfg, provider or HttpImageProvider.from_config(cfg)
        )

        app.state.config = cfg
        app.state.rate_limiter = rate_limiter
        app.state.generation_service = service

        if cfg.is_configured():
            cfg.validate()
        else:
            logger.warning("[WARN] 图片 Provider API Key 未配置，生成请求将返回配置错误")

        rate_limiter.start()
        service.start()
        logger.info(
            "服务启动: model={}, 限流 {}/{}s, 每次生成 {} 张",
            cfg.model,
            cfg.rate_limit_per_window,
            cfg.rate_limit_window_seconds,
            cfg.images_per_generation,
        )

        try:
            yield
        finally:
            await service.dispose()
            await rate_limiter.dispose()
            await close_http_clients()
            logger.info("服务已停止")

    app = FastAPI(title="Image Generation Gateway", lifespan=lifespan)
    app.include_router(generate_image_router)

    @app.get("/health")
    async def health() -> dict:
        service: ImageGenerationService = app.state.generation_service
        limiter: RateLimiter = app.state.rate_limiter
        return {
            "status": "ok",
            "configured": cfg.is_configured(),
            "rate_limit_buckets": limiter.bucket_count(),
            "dedup": service.deduplicator.stats(),
        }

    return app


app = create_app()
