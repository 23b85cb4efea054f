"""
基于 HTTP 的图片 Provider（fal.ai 风格的同步推理接口）

请求: POST {base_url}/{model}
      {"prompt", "seed", "num_images": 1, "image_size": {...},
       "enable_safety_checker": true, "scheduler": "euler"}
响应: {"images": [{"url": "..."}], "seed": 123}
"""

from __future__ import annotations

from typing import Any

import httpx

from src.clients.http_client import HTTPClientPool
from src.config import Config, config as default_config
from src.core.exceptions import ConfigurationError, ProviderRequestError
from src.core.logger import logger
from src.models.generation import ImageSize
from src.services.provider.base import ImageProvider, ProviderImage

# 上游错误响应在异常中保留的最大长度
_MAX_UPSTREAM_RESPONSE_CHARS = 1000


class HttpImageProvider(ImageProvider):
    """通过共享 httpx 客户端调用上游推理接口"""

    def __init__(
        self,
        api_key: str | None,
        base_url: str,
        model: str,
        *,
        auth_scheme: str = "Key",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model.strip("/")
        self.auth_scheme = auth_scheme
        self._client = client

    @classmethod
    def from_config(cls, cfg: Config | None = None) -> HttpImageProvider:
        cfg = cfg or default_config
        return cls(
            api_key=cfg.provider_api_key,
            base_url=cfg.provider_base_url,
            model=cfg.model,
        )

    @property
    def endpoint_url(self) -> str:
        return f"{self.base_url}/{self.model}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return await HTTPClientPool.get_default_client_async()

    def _build_payload(self, prompt: str, seed: int, image_size: ImageSize) -> dict[str, Any]:
        return {
            "prompt": prompt,
            "seed": seed,
            "num_images": 1,
            "image_size": {"width": image_size.width, "height": image_size.height},
            "enable_safety_checker": True,
            "scheduler": "euler",
        }

    async def invoke(self, prompt: str, seed: int, image_size: ImageSize) -> ProviderImage | None:
        if not self.api_key:
            raise ConfigurationError("Image provider API key is not configured")

        client = await self._get_client()
        response = await client.post(
            self.endpoint_url,
            json=self._build_payload(prompt, seed, image_size),
            headers={
                "Authorization": f"{self.auth_scheme} {self.api_key}",
                "Accept": "application/json",
            },
        )

        if response.status_code >= 400:
            raise ProviderRequestError(
                f"Upstream request failed with status {response.status_code}",
                status_code=response.status_code,
                upstream_response=response.text[:_MAX_UPSTREAM_RESPONSE_CHARS],
            )

        try:
            data = response.json()
        except ValueError:
            logger.warning("上游返回非 JSON 响应: seed={}", seed)
            return None

        return self._parse_image(data, seed)

    @staticmethod
    def _parse_image(data: Any, seed: int) -> ProviderImage | None:
        if not isinstance(data, dict):
            return None
        images = data.get("images")
        if not isinstance(images, list) or not images:
            return None
        first = images[0]
        url = first.get("url") if isinstance(first, dict) else None
        if not isinstance(url, str) or not url.strip():
            return None

        returned_seed = data.get("seed")
        return ProviderImage(
            url=url,
            seed=returned_seed if isinstance(returned_seed, int) else seed,
        )
