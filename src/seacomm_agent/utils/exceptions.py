"""
异常工具

把驱动、文件系统等处抛出的外部异常归一为 AgentError。
"""

import asyncio
import builtins

from seacomm_agent.domain.enums import FailureReason
from seacomm_agent.domain.errors import (
    AgentError,
    CompressionError,
    StorageError,
    TransmissionError,
)


def map_exception(e: Exception, transport: str | None = None) -> AgentError:
    """将标准异常映射为 AgentError"""
    if isinstance(e, AgentError):
        return e

    if isinstance(e, (asyncio.TimeoutError, builtins.ConnectionError)):
        return TransmissionError(
            FailureReason.LINK_INTERRUPTED,
            str(e) or type(e).__name__,
            transport=transport,
        )

    if isinstance(e, OSError):
        return StorageError(str(e), path=getattr(e, "filename", None))

    if isinstance(e, (ValueError, MemoryError)):
        return CompressionError(str(e))

    return AgentError(str(e) or type(e).__name__)

