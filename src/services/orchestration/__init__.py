"""
Orchestration 模块

提供生成请求编排相关的组件：
- ErrorClassifier: 错误分类器，将原始错误映射为 ClassifiedError（纯逻辑，无副作用）
- RetryExecutor: 按分类决定是否重试，指数退避 + 抖动，支持取消
- Deduplicator: 规范化请求键的结果缓存与进行中请求合并
- GenerationOrchestrator: 单请求扇出 N 个上游调用，容忍部分失败
- ImageGenerationService: 组合以上组件的入口
"""

from .deduplicator import CacheEntry, Deduplicator, normalize_key
from .error_classifier import ErrorClassifier, classify, is_retryable_category
from .generator import GenerationOrchestrator
from .retry import RetryExecutor, RetryHooks
from .service import ImageGenerationService

__all__ = [
    "CacheEntry",
    "Deduplicator",
    "ErrorClassifier",
    "GenerationOrchestrator",
    "ImageGenerationService",
    "RetryExecutor",
    "RetryHooks",
    "classify",
    "is_retryable_category",
    "normalize_key",
]
