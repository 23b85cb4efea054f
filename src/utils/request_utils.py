"""
请求处理工具函数
提供限流所需的客户端标识提取
"""

from collections.abc import Mapping

from fastapi import Request

from src.config.constants import RateLimitDefaults


def _first_forwarded_ip(forwarded_for: str) -> str | None:
    # X-Forwarded-For 格式: "client, proxy1, proxy2"
    ips = [ip.strip() for ip in forwarded_for.split(",") if ip.strip()]
    return ips[0] if ips else None


def get_client_ip(request: Request) -> str:
    """
    获取客户端真实IP地址

    按优先级检查：
    1. X-Forwarded-For 头的第一个 IP（原始客户端）
    2. X-Real-IP 头
    3. 直接客户端IP

    Returns:
        客户端IP地址；无法获取时返回 "unknown"，所有此类请求共享同一个限流桶
    """
    ip = extract_ip_from_headers(request.headers)
    if ip != RateLimitDefaults.FALLBACK_KEY:
        return ip

    if request.client and request.client.host:
        return request.client.host

    return RateLimitDefaults.FALLBACK_KEY


def extract_ip_from_headers(headers: Mapping[str, str]) -> str:
    """
    从HTTP头中提取IP地址（头名称不区分大小写）

    Returns:
        客户端IP地址，无法获取时返回 "unknown"
    """
    lowered = {k.lower(): v for k, v in headers.items()}

    forwarded_for = lowered.get("x-forwarded-for") or ""
    if forwarded_for:
        first = _first_forwarded_ip(forwarded_for)
        if first:
            return first

    real_ip = (lowered.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip

    return RateLimitDefaults.FALLBACK_KEY
