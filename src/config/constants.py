"""
默认常量配置

所有数值均可被 src.config.settings 中对应的环境变量覆盖。
"""


class RateLimitDefaults:
    """客户端限流默认值"""

    # 每个窗口允许的请求数
    REQUESTS_PER_WINDOW = 10
    # 窗口长度（秒）
    WINDOW_SECONDS = 60
    # 无法识别客户端时共用的限流键
    FALLBACK_KEY = "unknown"
    # 后台清理间隔（秒）
    CLEANUP_INTERVAL_SECONDS = 300
    # 分片锁数量
    LOCK_SHARDS = 16
    # 桶空闲超过 N 个窗口后被清理
    IDLE_WINDOWS_BEFORE_EVICTION = 2


class RetryDefaults:
    """重试退避默认值"""

    MAX_ATTEMPTS = 3
    BASE_DELAY_MS = 1000
    MAX_DELAY_MS = 30_000
    # 抖动比例：延迟 * (1 + [0, JITTER_RATIO])
    JITTER_RATIO = 0.1


class DedupDefaults:
    """请求去重缓存默认值"""

    TTL_SECONDS = 300
    MAX_ENTRIES = 100
    CLEANUP_INTERVAL_SECONDS = 60


class GenerationDefaults:
    """图片生成默认值"""

    IMAGES_PER_GENERATION = 4
    MAX_IMAGES = 10
    MIN_IMAGE_SIZE = 256
    MAX_IMAGE_SIZE = 2048
    DEFAULT_IMAGE_SIZE = 1024
    MAX_PROMPT_LENGTH = 500
    PROVIDER_TIMEOUT_SECONDS = 30.0
    # 整批扇出的重试次数（含首次）
    BATCH_RETRY_ATTEMPTS = 2
    MODEL = "fal-ai/flux/dev"
    MODEL_VERSION = "flux/dev"
    PROVIDER_BASE_URL = "https://fal.run"
    # 未指定 seed 时随机 seed 的取值范围
    SEED_RANGE = 1_000_000


class HttpClientDefaults:
    """上游 HTTP 客户端连接池默认值"""

    CONNECT_TIMEOUT = 10.0
    WRITE_TIMEOUT = 30.0
    POOL_TIMEOUT = 10.0
    MAX_CONNECTIONS = 100
    KEEPALIVE_CONNECTIONS = 20
    KEEPALIVE_EXPIRY = 30.0
