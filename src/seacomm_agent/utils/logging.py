"""
日志配置

loguru 初始化与敏感信息脱敏（电话号码、SIM 卡号、APN 口令）。
"""

import os
import re
import sys
from typing import Any

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"

SENSITIVE_PATTERNS = [
    # SIM 卡 ICCID（19-20 位）
    (re.compile(r"\b(89\d{4})\d{9,10}(\d{4})\b"), r"\1*********\2"),
    # 国际格式电话号码
    (re.compile(r"(\+\d{1,3})\d{4,9}(\d{2})\b"), r"\1******\2"),
    # 口令
    (
        re.compile(r'(password|passwd|pin|secret)["\']?\s*[:=]\s*["\']?([^"\'\s,}]{3,})["\']?', re.IGNORECASE),
        r"\1=***REDACTED***",
    ),
]


def sanitize_log_message(message: str) -> str:
    """对日志消息进行敏感信息脱敏"""
    if not message:
        return message
    sanitized = message
    for pattern, replacement in SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


class SanitizingFilter:
    """日志脱敏过滤器"""

    def __call__(self, record: dict[str, Any]) -> bool:
        if "message" in record:
            record["message"] = sanitize_log_message(record["message"])
        return True


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """
    初始化日志系统

    Args:
        level: 日志级别
        log_file: 日志文件路径（None 表示只输出到控制台）
        rotation: 文件轮转大小
        retention: 文件保留时长
    """
    logger.remove()
    sanitizing_filter = SanitizingFilter()

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=level,
        colorize=True,
        filter=sanitizing_filter,
    )

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            encoding="utf-8",
            enqueue=True,
            filter=sanitizing_filter,
        )

    logger.debug(f"日志初始化完成: level={level}, file={log_file or '-'}")
