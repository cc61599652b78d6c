"""
Agent 域模型定义

消息、链路快照、压缩结果与调度计划等在各组件之间流转的数据结构。
时间戳统一使用 epoch 秒（float）。
"""

import base64
from dataclasses import dataclass, field
from typing import Any

from seacomm_agent.domain.enums import (
    ConnectionState,
    DispatchMode,
    FailureReason,
    MessageStatus,
    Priority,
    TransportKind,
)


@dataclass
class AttemptRecord:
    """单条链路上的一次发送尝试"""

    transport: str                       # 链路名称
    ok: bool                             # 是否成功
    at: float                            # 尝试时间
    elapsed_ms: float = 0.0              # 耗时
    error: str | None = None             # 失败原因（FailureReason 值或描述）

    def to_dict(self) -> dict[str, Any]:
        return {
            "transport": self.transport,
            "ok": self.ok,
            "at": self.at,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttemptRecord":
        return cls(
            transport=data["transport"],
            ok=bool(data.get("ok", False)),
            at=float(data.get("at", 0.0)),
            elapsed_ms=float(data.get("elapsed_ms", 0.0)),
            error=data.get("error"),
        )


@dataclass
class Message:
    """
    待发送消息

    队列中的唯一实体，按 id 索引。attempts 统计的是调度轮次，
    每条链路上的细节记录在 attempt_log 中。
    """

    id: str                                  # 消息 ID（submit 时分配）
    payload: bytes                           # 原始负载（不透明字节）
    priority: Priority = Priority.NORMAL
    status: MessageStatus = MessageStatus.QUEUED
    attempts: int = 0                        # 已失败的调度轮次
    created_at: float = 0.0
    seq: int = 0                             # 入队序号（同优先级同时间的次序）

    last_attempt_at: float | None = None
    next_retry_at: float | None = None
    assigned_transport: str | None = None    # 发送中为当前链路，SENT 后为成功链路
    last_error: str | None = None
    encoding: str | None = None              # submit 时预估的压缩方法
    attempt_log: list[AttemptRecord] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.payload)

    def sort_key(self) -> tuple[int, float, int]:
        """队列次序：优先级降序，创建时间升序，序号升序"""
        return (-self.priority.rank, self.created_at, self.seq)

    def is_ready(self, now: float) -> bool:
        """是否可以参与本轮调度"""
        if self.status == MessageStatus.QUEUED:
            return True
        if self.status == MessageStatus.RETRY_SCHEDULED:
            return self.next_retry_at is None or self.next_retry_at <= now
        return False

    def status_view(self) -> dict[str, Any]:
        """对外暴露的状态视图"""
        return {
            "id": self.id,
            "status": self.status.value,
            "priority": self.priority.value,
            "attempts": self.attempts,
            "assigned_transport": self.assigned_transport,
            "last_error": self.last_error,
            "created_at": self.created_at,
            "last_attempt_at": self.last_attempt_at,
            "next_retry_at": self.next_retry_at,
        }

    def to_dict(self) -> dict[str, Any]:
        """转换为可持久化的字典（payload 以 base64 存储）"""
        return {
            "id": self.id,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "priority": self.priority.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "created_at": self.created_at,
            "seq": self.seq,
            "last_attempt_at": self.last_attempt_at,
            "next_retry_at": self.next_retry_at,
            "assigned_transport": self.assigned_transport,
            "last_error": self.last_error,
            "encoding": self.encoding,
            "attempt_log": [a.to_dict() for a in self.attempt_log],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            payload=base64.b64decode(data.get("payload", "")),
            priority=Priority.parse(data.get("priority", Priority.NORMAL)),
            status=MessageStatus(data.get("status", MessageStatus.QUEUED.value)),
            attempts=int(data.get("attempts", 0)),
            created_at=float(data.get("created_at", 0.0)),
            seq=int(data.get("seq", 0)),
            last_attempt_at=data.get("last_attempt_at"),
            next_retry_at=data.get("next_retry_at"),
            assigned_transport=data.get("assigned_transport"),
            last_error=data.get("last_error"),
            encoding=data.get("encoding"),
            attempt_log=[AttemptRecord.from_dict(a) for a in data.get("attempt_log", [])],
        )


@dataclass
class DeliveryReceipt:
    """链路发送回执"""

    transport: str
    bytes_sent: int
    elapsed_ms: float
    cost: float = 0.0
    channel: str | None = None               # 如 cellular 的 sms / data
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransportSnapshot:
    """链路状态快照（选择器的输入）"""

    name: str
    kind: TransportKind
    connection_state: ConnectionState
    max_payload_bytes: int
    cost_per_byte: float = 0.0
    typical_latency_ms: float = 0.0
    signal_quality: float | None = None      # 0-100，未知为 None
    min_signal_quality: float = 0.0
    success_rate: float = 1.0                # 滚动成功率 0-1

    @property
    def usable(self) -> bool:
        if not self.connection_state.is_usable:
            return False
        if self.signal_quality is not None and self.signal_quality < self.min_signal_quality:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "connection_state": self.connection_state.value,
            "max_payload_bytes": self.max_payload_bytes,
            "cost_per_byte": self.cost_per_byte,
            "typical_latency_ms": round(self.typical_latency_ms, 1),
            "signal_quality": (
                round(self.signal_quality, 1) if self.signal_quality is not None else None
            ),
            "min_signal_quality": self.min_signal_quality,
            "success_rate": round(self.success_rate, 3),
        }


@dataclass
class CompressionResult:
    """压缩结果"""

    method: str
    original_size: int
    encoded_size: int
    elapsed_ms: float
    encoded_payload: bytes

    @property
    def ratio(self) -> float:
        if self.original_size == 0:
            return 1.0
        return self.encoded_size / self.original_size


@dataclass
class MethodChoice:
    """
    压缩方法推荐

    method 为最佳可行方法；fits=False 表示连 none 也装不下。
    candidates 为按得分排序的全部可行方法，调用方可在实际大小
    超出预估时依次尝试。
    """

    method: str
    fits: bool = True
    estimated_size: int = 0
    score: float = 0.0
    candidates: list[str] = field(default_factory=list)


@dataclass
class RetryDecision:
    """mark_failed 的结果"""

    message_id: str
    attempts: int
    permanent: bool                          # True 表示已进入 FAILED
    next_retry_at: float | None = None
    delay: float | None = None


@dataclass
class SelectionPlan:
    """链路选择计划"""

    mode: DispatchMode
    transports: list[str] = field(default_factory=list)
    scores: dict[str, float] = field(default_factory=dict)
    reason: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.mode == DispatchMode.NONE or not self.transports


@dataclass
class DispatchOutcome:
    """一次调度（一轮）的结果，交给 on_outcome 回调"""

    message_id: str
    priority: Priority
    ok: bool
    mode: DispatchMode
    status: MessageStatus
    transport: str | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    failure: FailureReason | None = None
    retry: RetryDecision | None = None
