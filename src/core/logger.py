"""
日志配置 - 基于 loguru

级别约定:
- DEBUG: 单个子请求、缓存命中、限流桶状态
- INFO:  生成请求开始/完成、后台任务启停
- WARNING: 部分图片失败（降级返回）、限流拒绝、重试
- ERROR: 重试耗尽、整批生成失败

环境变量:
- LOG_LEVEL: 控制台日志级别（容器内默认 INFO，本地默认 DEBUG）
- LOG_DISABLE_FILE=true: 关闭文件日志（测试时使用）
- LOG_DIR: 文件日志目录，默认 <项目根>/logs

使用方式:
    from src.core.logger import logger

    logger.info("生成完成: {} 张", count)
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from loguru import logger

IS_DOCKER = (
    os.path.exists("/.dockerenv")
    or os.environ.get("DOCKER_CONTAINER", "false").lower() == "true"
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG" if not IS_DOCKER else "INFO").upper()

DISABLE_FILE_LOG = os.getenv("LOG_DISABLE_FILE", "false").lower() == "true"

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

LOG_DIR = Path(os.getenv("LOG_DIR", str(PROJECT_ROOT / "logs")))

CONSOLE_FORMAT_DEV = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{message}</cyan>"
)

CONSOLE_FORMAT_PROD = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}"

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"

logger.remove()

if IS_DOCKER:
    logger.add(
        sys.stdout,
        format=CONSOLE_FORMAT_PROD,
        level=LOG_LEVEL,
        colorize=False,
        backtrace=False,
        diagnose=False,
    )
else:
    logger.add(
        sys.stdout,
        format=CONSOLE_FORMAT_DEV,
        level=LOG_LEVEL,
        colorize=True,
    )

if not DISABLE_FILE_LOG:
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    # enqueue=False: 同步写入，避免 multiprocessing 信号量泄漏
    file_log_config = {
        "format": FILE_FORMAT,
        "rotation": "100 MB",
        "retention": "30 days",
        "compression": "gz",
        "enqueue": False,
        "encoding": "utf-8",
        "catch": True,
    }

    if IS_DOCKER:
        file_log_config["backtrace"] = False
        file_log_config["diagnose"] = False

    logger.add(  # type: ignore[call-overload]
        LOG_DIR / "app.log",
        level="DEBUG",
        **file_log_config,
    )

    error_log_config = file_log_config.copy()
    error_log_config["rotation"] = "50 MB"
    logger.add(  # type: ignore[call-overload]
        LOG_DIR / "error.log",
        level="ERROR",
        **error_log_config,
    )

# 第三方库噪音
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

__all__ = ["logger"]
