"""
图片生成请求/结果数据模型
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from src.config.constants import GenerationDefaults

# 基础内容过滤
_INAPPROPRIATE_PATTERNS = (
    re.compile(r"\b(nude|naked|nsfw|explicit|sexual)\b", re.IGNORECASE),
    re.compile(r"\b(violence|gore|blood|death)\b", re.IGNORECASE),
)


class ImageSize(BaseModel):
    """输出图片尺寸（像素）"""

    model_config = ConfigDict(extra="forbid")

    width: int = Field(
        GenerationDefaults.DEFAULT_IMAGE_SIZE,
        ge=GenerationDefaults.MIN_IMAGE_SIZE,
        le=GenerationDefaults.MAX_IMAGE_SIZE,
    )
    height: int = Field(
        GenerationDefaults.DEFAULT_IMAGE_SIZE,
        ge=GenerationDefaults.MIN_IMAGE_SIZE,
        le=GenerationDefaults.MAX_IMAGE_SIZE,
    )


class GenerationOptions(BaseModel):
    """生成选项，同时接受 snake_case 与 camelCase 字段名"""

    model_config = ConfigDict(populate_by_name=True)

    seed: int | None = Field(None, ge=0, description="基础 seed，第 i 张图使用 seed + i")
    num_images: int | None = Field(
        None,
        ge=1,
        le=GenerationDefaults.MAX_IMAGES,
        alias="numImages",
        description="扇出的子请求数量，未指定时使用默认值",
    )
    image_size: ImageSize | None = Field(None, alias="imageSize")

    def cache_parts(self) -> dict[str, Any]:
        """参与去重键计算的字段（去掉未设置的值）"""
        return self.model_dump(exclude_none=True)


class GenerationRequest(BaseModel):
    """一次生成请求"""

    prompt: str = Field(..., description="文本提示词")
    options: GenerationOptions = Field(default_factory=GenerationOptions)

    @field_validator("prompt")
    @classmethod
    def _validate_prompt(cls, value: str, info: ValidationInfo) -> str:
        prompt = value.strip()
        if not prompt:
            raise ValueError("Prompt is required")

        max_length = GenerationDefaults.MAX_PROMPT_LENGTH
        if info.context and info.context.get("max_prompt_length"):
            max_length = int(info.context["max_prompt_length"])
        if len(prompt) > max_length:
            raise ValueError(f"Prompt must be {max_length} characters or less")

        for pattern in _INAPPROPRIATE_PATTERNS:
            if pattern.search(prompt):
                raise ValueError("Prompt contains inappropriate content")
        return prompt


class GenerationMetadata(BaseModel):
    """生成结果元数据"""

    prompt: str
    generation_time_ms: int
    model_version: str
    images_count: int
    requested_count: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class GenerationResult(BaseModel):
    """生成结果，images 至少包含一张（零张视为失败，不构成结果）"""

    images: list[str] = Field(..., min_length=1)
    metadata: GenerationMetadata
    generation_id: str

    @property
    def is_partial(self) -> bool:
        return self.metadata.images_count < self.metadata.requested_count

    def to_response(self) -> dict[str, Any]:
        """API 响应体"""
        return {
            "imageUrls": list(self.images),
            "generationId": self.generation_id,
            "metadata": {
                "prompt": self.metadata.prompt,
                "generation_time": self.metadata.generation_time_ms,
                "model_version": self.metadata.model_version,
                "images_count": self.metadata.images_count,
                "requested_count": self.metadata.requested_count,
                "timestamp": self.metadata.timestamp.isoformat(),
            },
        }
