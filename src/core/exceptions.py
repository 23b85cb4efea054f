"""
异常定义

- ClassifiedError: 已分类的错误，分类在首次观测到错误时确定，之后沿调用栈原样传递
- ConfigurationError / ProviderRequestError: 原始错误，由 ErrorClassifier 转换为 ClassifiedError
- OperationCancelledError: 调用方主动取消，不参与重试
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """错误分类"""

    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    SERVER = "server"
    CLIENT = "client"
    GENERATION = "generation"
    UNKNOWN = "unknown"


# 可重试的分类，其余分类首次出现即返回调用方
RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.NETWORK,
        ErrorCategory.SERVER,
        ErrorCategory.GENERATION,
        ErrorCategory.UNKNOWN,
    }
)

# 展示信息（由 UI 层消费）
CATEGORY_PRESENTATION: dict[ErrorCategory, dict[str, Any]] = {
    ErrorCategory.CONFIGURATION: {
        "title": "Configuration Error",
        "user_message": "The application is not properly configured. Please check the setup.",
        "actionable": True,
        "severity": "high",
    },
    ErrorCategory.VALIDATION: {
        "title": "Invalid Input",
        "user_message": "Please check your input and try again.",
        "actionable": True,
        "severity": "medium",
    },
    ErrorCategory.AUTHENTICATION: {
        "title": "Authentication Error",
        "user_message": "Authentication failed. Please check your credentials.",
        "actionable": True,
        "severity": "high",
    },
    ErrorCategory.RATE_LIMIT: {
        "title": "Rate Limit Exceeded",
        "user_message": "Too many requests. Please wait a moment before trying again.",
        "actionable": False,
        "severity": "medium",
    },
    ErrorCategory.NETWORK: {
        "title": "Connection Problem",
        "user_message": "Unable to connect to the server. Please check your internet connection.",
        "actionable": False,
        "severity": "medium",
    },
    ErrorCategory.SERVER: {
        "title": "Server Error",
        "user_message": "A server error occurred. Please try again later.",
        "actionable": False,
        "severity": "high",
    },
    ErrorCategory.CLIENT: {
        "title": "Request Error",
        "user_message": "There was a problem with your request.",
        "actionable": True,
        "severity": "medium",
    },
    ErrorCategory.GENERATION: {
        "title": "Generation Failed",
        "user_message": "Image generation failed. Please try a different prompt.",
        "actionable": True,
        "severity": "medium",
    },
    ErrorCategory.UNKNOWN: {
        "title": "Unexpected Error",
        "user_message": "An unexpected error occurred. Please try again.",
        "actionable": False,
        "severity": "medium",
    },
}

# 分类 -> 返回给客户端的 HTTP 状态码
CATEGORY_HTTP_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.CONFIGURATION: 500,
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.RATE_LIMIT: 429,
    ErrorCategory.NETWORK: 408,
    ErrorCategory.SERVER: 500,
    ErrorCategory.CLIENT: 400,
    ErrorCategory.GENERATION: 422,
    ErrorCategory.UNKNOWN: 500,
}


class ClassifiedError(Exception):
    """
    已分类的错误

    category 与 retryable 由同一输入确定性推导；实例一经创建不再重新分类。
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        retryable: bool | None = None,
        status: int | None = None,
        context: dict[str, Any] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = ErrorCategory(category)
        self.retryable = (
            self.category in RETRYABLE_CATEGORIES if retryable is None else retryable
        )
        self.status = status
        self.context: dict[str, Any] = dict(context or {})
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)

        presentation = CATEGORY_PRESENTATION[self.category]
        self.title: str = presentation["title"]
        self.user_message: str = presentation["user_message"]
        self.severity: str = presentation["severity"]
        self.actionable: bool = presentation["actionable"]

    @property
    def http_status(self) -> int:
        """返回给调用方的 HTTP 状态码"""
        if (
            self.category == ErrorCategory.CLIENT
            and self.status is not None
            and 400 <= self.status < 500
        ):
            return self.status
        return CATEGORY_HTTP_STATUS[self.category]

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "title": self.title,
            "userMessage": self.user_message,
            "severity": self.severity,
            "actionable": self.actionable,
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(category={self.category.value}, "
            f"retryable={self.retryable}, status={self.status}, "
            f"message={self.message!r})"
        )


class ConfigurationError(Exception):
    """服务端配置缺失或无效"""


class ProviderRequestError(RuntimeError):
    """上游 Provider 返回非 2xx 响应，携带状态码和原始响应便于分类与排查"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        upstream_response: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.upstream_response = upstream_response


class OperationCancelledError(Exception):
    """调用方通过取消信号中止了操作"""

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)
        self.message = message
