"""
Agent 域模型

消息、链路快照、错误与枚举。
"""

from seacomm_agent.domain.enums import (
    ConnectionState,
    DispatchMode,
    FailureReason,
    MessageStatus,
    Priority,
    TransportKind,
)
from seacomm_agent.domain.errors import (
    AgentError,
    CapacityError,
    CompressionError,
    ConfigError,
    ConnectionError,
    StorageError,
    TransmissionError,
)
from seacomm_agent.domain.models import (
    AttemptRecord,
    CompressionResult,
    DeliveryReceipt,
    DispatchOutcome,
    Message,
    MethodChoice,
    RetryDecision,
    SelectionPlan,
    TransportSnapshot,
)

__all__ = [
    # 枚举
    "ConnectionState",
    "DispatchMode",
    "FailureReason",
    "MessageStatus",
    "Priority",
    "TransportKind",
    # 错误
    "AgentError",
    "CapacityError",
    "CompressionError",
    "ConfigError",
    "ConnectionError",
    "StorageError",
    "TransmissionError",
    # 模型
    "AttemptRecord",
    "CompressionResult",
    "DeliveryReceipt",
    "DispatchOutcome",
    "Message",
    "MethodChoice",
    "RetryDecision",
    "SelectionPlan",
    "TransportSnapshot",
]
