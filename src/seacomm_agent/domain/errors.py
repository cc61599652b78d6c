"""
Agent 域错误定义
"""

from typing import Any

from seacomm_agent.domain.enums import FailureReason


class AgentError(Exception):
    """Agent 基础错误"""

    def __init__(
        self,
        message: str,
        code: str = "AGENT_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConnectionError(AgentError):
    """链路无法进入 READY（不影响 Agent 运行，仅排除该链路）"""

    def __init__(
        self,
        message: str,
        transport: str | None = None,
        stage: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="CONNECTION_ERROR", details=details)
        self.transport = transport
        self.stage = stage


class TransmissionError(AgentError):
    """单次发送失败"""

    def __init__(
        self,
        reason: FailureReason,
        message: str = "",
        transport: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message or reason.value,
            code="TRANSMISSION_ERROR",
            details=details,
        )
        self.reason = reason
        self.transport = transport

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason.value
        data["transport"] = self.transport
        return data

    def __str__(self) -> str:
        prefix = f"{self.transport}: " if self.transport else ""
        return f"{prefix}{self.reason.value} ({self.message})"


class CapacityError(AgentError):
    """队列已满且新消息优先级不高于任何可驱逐项"""

    def __init__(
        self,
        message: str,
        capacity: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="CAPACITY_ERROR", details=details)
        self.capacity = capacity


class CompressionError(AgentError):
    """压缩 / 解压失败"""

    def __init__(
        self,
        message: str,
        method: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="COMPRESSION_ERROR", details=details)
        self.method = method


class ConfigError(AgentError):
    """配置错误"""

    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="CONFIG_ERROR", details=details)
        self.config_key = config_key


class StorageError(AgentError):
    """队列持久化错误"""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code="STORAGE_ERROR", details=details)
        self.path = path
