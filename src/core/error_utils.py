"""
错误信息提取工具函数
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import httpx


def extract_error_message(error: Any, status_code: int | None = None) -> str:
    """
    提取用于日志/分类的错误消息，优先使用上游原始响应

    Args:
        error: 异常、字符串或包含 message 字段的字典
        status_code: 可选的 HTTP 状态码，用于构建更详细的错误消息

    Returns:
        错误消息字符串
    """
    if isinstance(error, str):
        return error
    if isinstance(error, Mapping):
        return str(error.get("message") or error.get("error") or "")

    upstream_response = getattr(error, "upstream_response", None)
    if upstream_response and isinstance(upstream_response, str) and upstream_response.strip():
        base = str(error)
        # 同时保留异常自身消息，分类依赖其中的关键字
        message = f"{base}: {upstream_response}" if base else upstream_response
    else:
        # str 可能为空（如 httpx 超时异常），回退到 repr
        message = str(error) or repr(error)

    if status_code is not None:
        return f"HTTP {status_code}: {message}"
    return message


def extract_client_error_message(error: Exception) -> str:
    """
    提取返回给客户端的友好错误消息

    优先使用 message 属性（ClassifiedError 等已处理过的消息）
    """
    message = getattr(error, "message", None)
    if message and isinstance(message, str) and message.strip():
        return message

    return str(error) or repr(error)


def extract_status_code(error: Any) -> int | None:
    """
    提取错误携带的 HTTP 状态码

    - 字典: status / status_code 字段
    - httpx.HTTPStatusError: response.status_code
    - 传输层错误 / 超时: 0（与未收到响应的网络错误一致）
    - 其他异常: status / status_code 属性
    """
    if isinstance(error, str):
        return None
    if isinstance(error, Mapping):
        value = error.get("status", error.get("status_code"))
        return _as_int(value)

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, TimeoutError)):
        return 0

    for attr in ("status", "status_code"):
        value = _as_int(getattr(error, attr, None))
        if value is not None:
            return value
    return None


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
