"""
Agent 域枚举定义
"""

from enum import Enum


class Priority(str, Enum):
    """消息优先级"""

    LOW = "low"                  # 例行遥测
    NORMAL = "normal"            # 普通数据
    HIGH = "high"                # 重要告警
    CRITICAL = "critical"        # 生命安全（全链路广播）

    @property
    def rank(self) -> int:
        """排序权重（越大越优先）"""
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: "str | Priority") -> "Priority":
        """宽松解析（大小写不敏感）"""
        if isinstance(value, Priority):
            return value
        return cls(str(value).strip().lower())


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}


class MessageStatus(str, Enum):
    """消息状态"""

    QUEUED = "queued"                    # 排队等待发送
    SELECTING = "selecting"              # 正在选择链路
    TRANSMITTING = "transmitting"        # 发送中
    SENT = "sent"                        # 已送达（终态）
    RETRY_SCHEDULED = "retry_scheduled"  # 等待退避重试
    FAILED = "failed"                    # 永久失败（终态）
    CANCELLED = "cancelled"              # 已取消（终态）

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.SENT, MessageStatus.FAILED, MessageStatus.CANCELLED)

    @property
    def is_in_flight(self) -> bool:
        return self in (MessageStatus.SELECTING, MessageStatus.TRANSMITTING)


class ConnectionState(str, Enum):
    """链路连接状态"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"        # 可用但质量下降
    FAILED = "failed"

    @property
    def is_usable(self) -> bool:
        return self in (ConnectionState.READY, ConnectionState.DEGRADED)


class TransportKind(str, Enum):
    """链路介质类型"""

    RADIO = "radio"              # LoRa 短距无线电
    CELLULAR = "cellular"        # GSM/GPRS 蜂窝网络
    SATELLITE = "satellite"      # 卫星通信
    WIFI = "wifi"                # 本地无线局域网


class FailureReason(str, Enum):
    """发送失败原因"""

    NO_ACKNOWLEDGEMENT = "no_acknowledgement"      # 对端未确认
    LINK_INTERRUPTED = "link_interrupted"          # 链路中断 / 超时
    INSUFFICIENT_SIGNAL = "insufficient_signal"    # 信号低于可用下限
    PAYLOAD_TOO_LARGE = "payload_too_large"        # 超出单帧上限


class DispatchMode(str, Enum):
    """调度模式"""

    SEQUENTIAL = "sequential"    # 按顺序逐个尝试
    BROADCAST = "broadcast"      # 全部链路并发
    NONE = "none"                # 无可用链路
