"""
图片生成公共 API

POST /api/generate-image

处理顺序:
1. 按客户端 IP 限流（所有响应都带 X-RateLimit-* 头）
2. 检查上游 API Key 是否已配置
3. 校验请求体（prompt 必填、长度限制、基础内容过滤）
4. 交给 ImageGenerationService（去重 -> 整批重试 -> 扇出生成）
5. ClassifiedError 按分类映射 HTTP 状态码，响应体为分类后的错误信息
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src.config import Config
from src.core.error_utils import extract_client_error_message
from src.core.exceptions import ClassifiedError, ErrorCategory, OperationCancelledError
from src.core.logger import logger
from src.models.generation import GenerationRequest
from src.services.orchestration.error_classifier import classify
from src.services.orchestration.service import ImageGenerationService
from src.services.rate_limit.limiter import RateLimiter
from src.utils.request_utils import get_client_ip

router = APIRouter(prefix="/api", tags=["Image Generation"])

# nginx 约定的"客户端关闭连接"状态码
CLIENT_CLOSED_REQUEST = 499
DISCONNECT_POLL_INTERVAL_SECONDS = 0.5


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL_SECONDS)


def _validation_message(exc: ValidationError) -> str:
    """取第一条校验错误作为对外消息"""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    message = str(first.get("msg", "Invalid request"))
    # pydantic 对 ValueError 的消息加了 "Value error, " 前缀
    return message.removeprefix("Value error, ")


def _error_response(error: ClassifiedError, headers: dict[str, str]) -> JSONResponse:
    return JSONResponse(
        status_code=error.http_status,
        content=error.to_dict(),
        headers=headers,
    )


@router.post("/generate-image")
async def generate_image(request: Request) -> Any:
    """
    根据文本提示词生成图片

    **请求体**
    - prompt: 文本提示词（必填）
    - options.seed: 基础 seed，第 i 张图使用 seed + i
    - options.numImages: 生成数量（1-10，默认 4）
    - options.imageSize: {width, height}

    **返回字段**
    - imageUrls: 成功生成的图片 URL（部分失败时少于请求数量）
    - generationId: 本次生成的标识
    - metadata: prompt、generation_time、model_version、images_count 等

    **错误**
    - 429: 超出限流，带 Retry-After 头
    - 400: 请求体校验失败
    - 401/500/422 等: 见返回体中的 category
    """
    cfg: Config = request.app.state.config
    limiter: RateLimiter = request.app.state.rate_limiter
    service: ImageGenerationService = request.app.state.generation_service

    client_ip = get_client_ip(request)
    decision = await limiter.check_and_consume(client_ip)
    headers = decision.headers()

    if not decision.allowed:
        return JSONResponse(
            status_code=429,
            content={
                "error": "Too many requests. Please try again later.",
                "category": ErrorCategory.RATE_LIMIT.value,
                "retryable": True,
                "retryAfter": decision.retry_after_seconds,
            },
            headers=headers,
        )

    if not cfg.is_configured():
        logger.error("图片生成 API Key 未配置，拒绝请求")
        error = ClassifiedError(
            "Image provider API key is not configured",
            ErrorCategory.CONFIGURATION,
        )
        content = error.to_dict()
        content["setup"] = cfg.setup_instructions()
        return JSONResponse(status_code=error.http_status, content=content, headers=headers)

    try:
        body = await request.json()
    except ValueError:
        error = ClassifiedError("Invalid JSON body", ErrorCategory.VALIDATION)
        return _error_response(error, headers)

    try:
        generation_request = GenerationRequest.model_validate(
            body, context={"max_prompt_length": cfg.max_prompt_length}
        )
    except ValidationError as exc:
        error = ClassifiedError(_validation_message(exc), ErrorCategory.VALIDATION)
        logger.info("请求校验失败: client={}, {}", client_ip, error.message)
        return _error_response(error, headers)

    # 客户端断开时中止生成
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))

    try:
        result = await service.generate(generation_request, cancel_event=cancel_event)
    except OperationCancelledError as exc:
        logger.info("客户端断开，已取消生成: client={}", client_ip)
        return JSONResponse(
            status_code=CLIENT_CLOSED_REQUEST,
            content={
                "error": extract_client_error_message(exc),
                "category": "cancelled",
                "retryable": False,
            },
            headers=headers,
        )
    except ClassifiedError as error:
        logger.error(
            "图片生成失败: client={}, [{}] {}", client_ip, error.category.value, error.message
        )
        return _error_response(error, headers)
    except Exception as exc:
        error = classify(exc, {"client_ip": client_ip})
        logger.exception("图片生成出现未分类异常: {}", exc)
        return _error_response(error, headers)
    finally:
        watcher.cancel()

    if result.is_partial:
        logger.warning(
            "返回部分结果: {}/{} 张, generation_id={}",
            result.metadata.images_count,
            result.metadata.requested_count,
            result.generation_id,
        )

    return JSONResponse(status_code=200, content=result.to_response(), headers=headers)
