"""
错误分类器

纯函数，无副作用：将原始错误映射为 ClassifiedError。
分类只在首次观测到错误时执行一次；已分类的错误原样返回，重试执行器只读取分类结果。

匹配规则（不区分大小写的子串 / 状态码，先命中先生效）：
1. configuration | api key | not configured                     -> configuration
2. validation | invalid | required 或 status == 400             -> validation
3. unauthorized | authentication 或 status in {401, 403}        -> authentication
4. rate limit | too many requests 或 status == 429              -> rate_limit
5. network | connection | timeout 或 status == 0                -> network
6. server | internal 或 500 <= status <= 599                    -> server
7. 400 <= status <= 499                                         -> client
8. 其他                                                         -> unknown

例外: 消息中出现 unauthorized | authentication 时直接归为 authentication，
"Unauthorized: invalid api key" 不会因 "api key" / "invalid" 落入前两条。
只有消息关键字提前，401/403 状态码仍按原顺序匹配，("invalid payload", 401) -> validation。
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from src.core.error_utils import extract_error_message, extract_status_code
from src.core.exceptions import (
    RETRYABLE_CATEGORIES,
    ClassifiedError,
    ConfigurationError,
    ErrorCategory,
)

_AUTHENTICATION_KEYWORDS = ("unauthorized", "authentication")
_CONFIGURATION_KEYWORDS = ("configuration", "api key", "not configured")
_VALIDATION_KEYWORDS = ("validation", "invalid", "required")
_RATE_LIMIT_KEYWORDS = ("rate limit", "too many requests")
_NETWORK_KEYWORDS = ("network", "connection", "timeout")
_SERVER_KEYWORDS = ("server", "internal")


def _contains(message: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in message for keyword in keywords)


def categorize(message: str, status: int | None) -> ErrorCategory:
    """根据消息与状态码确定分类"""
    text = (message or "").lower()

    if _contains(text, _AUTHENTICATION_KEYWORDS):
        return ErrorCategory.AUTHENTICATION
    if _contains(text, _CONFIGURATION_KEYWORDS):
        return ErrorCategory.CONFIGURATION
    if _contains(text, _VALIDATION_KEYWORDS) or status == 400:
        return ErrorCategory.VALIDATION
    if status in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if _contains(text, _RATE_LIMIT_KEYWORDS) or status == 429:
        return ErrorCategory.RATE_LIMIT
    if _contains(text, _NETWORK_KEYWORDS) or status == 0:
        return ErrorCategory.NETWORK
    if _contains(text, _SERVER_KEYWORDS) or (status is not None and 500 <= status <= 599):
        return ErrorCategory.SERVER
    if status is not None and 400 <= status <= 499:
        return ErrorCategory.CLIENT
    return ErrorCategory.UNKNOWN


def is_retryable_category(category: ErrorCategory | str) -> bool:
    return ErrorCategory(category) in RETRYABLE_CATEGORIES


def classify(error: Any, context: Mapping[str, Any] | None = None) -> ClassifiedError:
    """
    将原始错误分类

    Args:
        error: 异常、字符串，或包含 message/status 的字典
        context: 附加上下文（attempt、prompt 等），写入 ClassifiedError.context

    Returns:
        ClassifiedError；输入已是 ClassifiedError 时原样返回
    """
    if isinstance(error, ClassifiedError):
        return error

    status = extract_status_code(error)
    message = extract_error_message(error)

    if isinstance(error, ConfigurationError):
        category = ErrorCategory.CONFIGURATION
    else:
        category = categorize(message, status)

    return ClassifiedError(
        message=message or "An unexpected error occurred",
        category=category,
        retryable=is_retryable_category(category),
        status=status,
        context=dict(context or {}),
        original_error=error if isinstance(error, BaseException) else None,
    )


class ErrorClassifier:
    """面向对象包装，便于注入"""

    def classify(self, error: Any, context: Mapping[str, Any] | None = None) -> ClassifiedError:
        return classify(error, context)

    __call__ = classify
