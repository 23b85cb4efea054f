"""
客户端限流

- RateLimiter: 按客户端键的窗口令牌桶，分片锁保证单键原子性
"""

from .limiter import RateLimitBucket, RateLimitDecision, RateLimiter

__all__ = ["RateLimiter", "RateLimitBucket", "RateLimitDecision"]
