"""
上游图片 Provider 接口

编排层只依赖 invoke(prompt, seed, image_size) -> ProviderImage | None | 抛出异常，
具体传输协议由实现类负责。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from src.models.generation import ImageSize


@dataclass(frozen=True)
class ProviderImage:
    """单次上游调用产出的图片"""

    url: str
    seed: int | None = None


class ImageProvider(ABC):
    @abstractmethod
    async def invoke(self, prompt: str, seed: int, image_size: ImageSize) -> ProviderImage | None:
        """
        生成一张图片

        Returns:
            ProviderImage；上游返回空结果时返回 None（视为该子请求失败）

        Raises:
            任意异常，由编排层统一分类
        """
        pass
