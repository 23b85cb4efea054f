"""
全局HTTP客户端池管理

避免每次上游调用都创建新的 AsyncClient：
1. 默认客户端：全局复用单一客户端，keep-alive 减少握手开销
2. 命名客户端：需要特定配置（超时、base_url 等）时按名称缓存
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from src.config import config
from src.config.constants import HttpClientDefaults
from src.core.logger import logger

_default_client_lock = asyncio.Lock()


def _default_timeout(read_timeout: float | None = None) -> httpx.Timeout:
    return httpx.Timeout(
        connect=HttpClientDefaults.CONNECT_TIMEOUT,
        read=read_timeout if read_timeout is not None else config.provider_timeout_seconds,
        write=HttpClientDefaults.WRITE_TIMEOUT,
        pool=HttpClientDefaults.POOL_TIMEOUT,
    )


def _default_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=HttpClientDefaults.MAX_CONNECTIONS,
        max_keepalive_connections=HttpClientDefaults.KEEPALIVE_CONNECTIONS,
        keepalive_expiry=HttpClientDefaults.KEEPALIVE_EXPIRY,
    )


class HTTPClientPool:
    """全局HTTP客户端池"""

    _default_client: httpx.AsyncClient | None = None
    _clients: dict[str, httpx.AsyncClient] = {}

    @classmethod
    async def get_default_client_async(cls) -> httpx.AsyncClient:
        """获取默认的HTTP客户端（并发首次调用安全）"""
        if cls._default_client is not None:
            return cls._default_client

        async with _default_client_lock:
            # 双重检查，避免重复创建
            if cls._default_client is None:
                cls._default_client = httpx.AsyncClient(
                    timeout=_default_timeout(),
                    limits=_default_limits(),
                    follow_redirects=True,
                )
                logger.info(
                    "全局HTTP客户端池已初始化: max_connections={}, keepalive={}",
                    HttpClientDefaults.MAX_CONNECTIONS,
                    HttpClientDefaults.KEEPALIVE_CONNECTIONS,
                )
        return cls._default_client

    @classmethod
    def get_client(cls, name: str, **kwargs: Any) -> httpx.AsyncClient:
        """
        获取或创建命名的HTTP客户端

        Args:
            name: 客户端标识符
            **kwargs: httpx.AsyncClient 的配置参数，覆盖默认值
        """
        if name not in cls._clients:
            client_config: dict[str, Any] = {
                "timeout": _default_timeout(),
                "limits": _default_limits(),
                "follow_redirects": True,
            }
            client_config.update(kwargs)
            cls._clients[name] = httpx.AsyncClient(**client_config)
            logger.debug("创建命名HTTP客户端: {}", name)

        return cls._clients[name]

    @classmethod
    async def close_all(cls) -> None:
        """关闭所有HTTP客户端"""
        if cls._default_client is not None:
            await cls._default_client.aclose()
            cls._default_client = None
            logger.info("默认HTTP客户端已关闭")

        for name, client in cls._clients.items():
            try:
                await client.aclose()
                logger.debug("命名HTTP客户端已关闭: {}", name)
            except Exception as e:
                logger.warning("关闭HTTP客户端 {} 失败: {}", name, e)

        cls._clients.clear()

    @classmethod
    def get_pool_stats(cls) -> dict[str, Any]:
        return {
            "default_client_active": cls._default_client is not None,
            "named_clients_count": len(cls._clients),
        }


async def close_http_clients() -> None:
    """关闭所有HTTP客户端的便捷函数"""
    await HTTPClientPool.close_all()
