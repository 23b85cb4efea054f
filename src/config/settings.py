"""
应用配置

从环境变量读取配置，模块级 `config` 为进程默认实例。
测试或多实例场景可以直接构造 `Config(...)` 并覆盖任意字段。
"""

from __future__ import annotations

import os
from typing import Any

from src.config.constants import (
    DedupDefaults,
    GenerationDefaults,
    RateLimitDefaults,
    RetryDefaults,
)
from src.core.exceptions import ConfigurationError

# 示例 .env 中的占位值，视为未配置
PLACEHOLDER_API_KEY = "your_api_key_here"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid configuration: {name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid configuration: {name} must be a number, got {raw!r}")


class Config:
    """运行时配置"""

    def __init__(self, **overrides: Any) -> None:
        # 上游 Provider
        self.provider_api_key: str | None = (
            os.getenv("IMAGE_PROVIDER_API_KEY") or os.getenv("FAL_KEY") or None
        )
        self.provider_base_url: str = os.getenv(
            "IMAGE_PROVIDER_BASE_URL", GenerationDefaults.PROVIDER_BASE_URL
        )
        self.model: str = os.getenv("IMAGE_MODEL", GenerationDefaults.MODEL)
        self.model_version: str = os.getenv(
            "IMAGE_MODEL_VERSION", GenerationDefaults.MODEL_VERSION
        )
        self.provider_timeout_seconds: float = _env_float(
            "PROVIDER_TIMEOUT_SECONDS", GenerationDefaults.PROVIDER_TIMEOUT_SECONDS
        )

        # 限流
        self.rate_limit_per_window: int = _env_int(
            "RATE_LIMIT_PER_MINUTE", RateLimitDefaults.REQUESTS_PER_WINDOW
        )
        self.rate_limit_window_seconds: float = _env_float(
            "RATE_LIMIT_WINDOW_SECONDS", RateLimitDefaults.WINDOW_SECONDS
        )
        self.rate_limit_cleanup_interval_seconds: float = _env_float(
            "RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", RateLimitDefaults.CLEANUP_INTERVAL_SECONDS
        )

        # 重试
        self.retry_base_delay_ms: int = _env_int(
            "RETRY_BASE_DELAY_MS", RetryDefaults.BASE_DELAY_MS
        )
        # 整批生成的尝试次数（含首次），也是 RetryExecutor 的次数上限
        self.generation_retry_attempts: int = _env_int(
            "GENERATION_RETRY_ATTEMPTS", GenerationDefaults.BATCH_RETRY_ATTEMPTS
        )

        # 去重缓存
        self.dedup_ttl_seconds: float = _env_float(
            "DEDUP_TTL_SECONDS", DedupDefaults.TTL_SECONDS
        )
        self.dedup_max_entries: int = _env_int(
            "DEDUP_MAX_ENTRIES", DedupDefaults.MAX_ENTRIES
        )
        self.dedup_cleanup_interval_seconds: float = _env_float(
            "DEDUP_CLEANUP_INTERVAL_SECONDS", DedupDefaults.CLEANUP_INTERVAL_SECONDS
        )

        # 输入约束
        self.max_prompt_length: int = _env_int(
            "MAX_PROMPT_LENGTH", GenerationDefaults.MAX_PROMPT_LENGTH
        )
        self.images_per_generation: int = _env_int(
            "IMAGES_PER_GENERATION", GenerationDefaults.IMAGES_PER_GENERATION
        )

        for name, value in overrides.items():
            if not hasattr(self, name):
                raise AttributeError(f"未知配置项: {name}")
            setattr(self, name, value)

    def is_configured(self) -> bool:
        """API Key 是否已配置（占位值视为未配置）"""
        key = (self.provider_api_key or "").strip()
        return bool(key) and key != PLACEHOLDER_API_KEY

    def validate(self) -> None:
        """
        校验配置，启动时调用

        Raises:
            ConfigurationError: 配置缺失或取值越界
        """
        if not self.provider_api_key:
            raise ConfigurationError("Image provider API key is not configured (IMAGE_PROVIDER_API_KEY)")
        if self.provider_api_key.strip() == PLACEHOLDER_API_KEY:
            raise ConfigurationError("Please set a valid API key in IMAGE_PROVIDER_API_KEY")
        if self.max_prompt_length <= 0:
            raise ConfigurationError("Invalid configuration: MAX_PROMPT_LENGTH must be greater than 0")
        if self.generation_retry_attempts < 1:
            raise ConfigurationError(
                "Invalid configuration: GENERATION_RETRY_ATTEMPTS must be at least 1"
            )
        if not 1 <= self.images_per_generation <= GenerationDefaults.MAX_IMAGES:
            raise ConfigurationError(
                f"Invalid configuration: IMAGES_PER_GENERATION must be between 1 and {GenerationDefaults.MAX_IMAGES}"
            )

    @staticmethod
    def setup_instructions() -> dict[str, Any]:
        """缺少配置时返回给调用方的指引"""
        return {
            "message": "Image provider API key is required to generate images",
            "steps": [
                "1. Go to https://fal.ai/dashboard",
                "2. Sign up or log in to your account",
                "3. Generate an API key",
                "4. Add IMAGE_PROVIDER_API_KEY=your_api_key to your .env file",
                "5. Restart the server",
            ],
            "documentation": "https://fal.ai/docs",
        }


config = Config()
