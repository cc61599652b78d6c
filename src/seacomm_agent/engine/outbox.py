"""
发送队列

有界、按优先级排序、持久化的待发送消息队列：
- 排序：优先级降序 -> created_at 升序 -> seq 升序
- 满队列：驱逐优先级严格更低、最旧且不在途的消息；没有则拒绝新消息
- 失败：指数退避重试，次数耗尽后永久失败并移出队列
- 所有修改由同一把 asyncio.Lock 串行化，每次修改后写穿到存储
- 终态记录按账本保留条数封顶；支持导出 / 导入以便设备间交接
"""

import asyncio
import heapq
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from seacomm_agent.domain.enums import MessageStatus, Priority
from seacomm_agent.domain.errors import AgentError, CapacityError
from seacomm_agent.domain.models import AttemptRecord, Message, RetryDecision
from seacomm_agent.engine.policies import RetryPolicy
from seacomm_agent.engine.store import QueueStore, outcome_record

EVICTED = "evicted"
CLEARED = "cleared"
DEFAULT_MAX_OUTCOMES = 10000


@dataclass
class QueueStats:
    """队列计数"""

    enqueued: int = 0
    evicted: int = 0
    rejected: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    retries_scheduled: int = 0
    persist_failures: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "enqueued": self.enqueued,
            "evicted": self.evicted,
            "rejected": self.rejected,
            "sent": self.sent,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "retries_scheduled": self.retries_scheduled,
            "persist_failures": self.persist_failures,
        }


class TransmissionQueue:
    """
    发送队列

    以 id 为键保存消息，对外的四个核心操作为
    enqueue / peek_ready / mark_sent / mark_failed。
    """

    def __init__(
        self,
        capacity: int = 1000,
        retry_policy: RetryPolicy | None = None,
        store: QueueStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if capacity <= 0:
            raise ValueError(f"capacity 必须为正数: {capacity}")
        self._capacity = capacity
        self._retry = retry_policy or RetryPolicy()
        self._store = store
        self._clock = clock
        # 内存中的终态记录与账本保留条数一致
        self._max_outcomes = store.max_ledger_entries if store is not None else DEFAULT_MAX_OUTCOMES

        self._messages: dict[str, Message] = {}
        self._outcomes: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._seq = 0
        self._stats = QueueStats()
        self._loaded = False

    # ==================== 属性 ====================

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @property
    def size(self) -> int:
        return len(self._messages)

    @property
    def is_full(self) -> bool:
        return len(self._messages) >= self._capacity

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    # ==================== 加载 ====================

    async def load(self) -> int:
        """
        从存储恢复

        在途（SELECTING / TRANSMITTING）消息重置为 QUEUED；
        超出容量的部分按驱逐顺序移出。

        Returns:
            恢复的消息数
        """
        if self._store is None:
            self._loaded = True
            return 0

        async with self._lock:
            messages = await self._store.load_snapshot()
            self._outcomes = await self._store.load_outcomes()
            self._trim_outcomes()
            self._messages = {}
            reset = 0
            for message in messages:
                if message.status.is_in_flight:
                    message.status = MessageStatus.QUEUED
                    message.assigned_transport = None
                    reset += 1
                if message.status.is_terminal:
                    continue
                self._messages[message.id] = message
            self._seq = max((m.seq for m in self._messages.values()), default=0)

            while len(self._messages) > self._capacity:
                victim = self._lowest(lambda m: True)
                await self._evict(victim)

            await self._persist()
            self._loaded = True

        logger.info(
            f"队列已恢复: {len(self._messages)} 条待发送，{reset} 条在途重置，"
            f"{len(self._outcomes)} 条终态记录"
        )
        return len(self._messages)

    # ==================== 核心操作 ====================

    async def enqueue(self, message: Message) -> None:
        """
        入队

        Raises:
            CapacityError: 队列已满且没有可驱逐的更低优先级消息
        """
        async with self._lock:
            if message.id in self._messages or message.id in self._outcomes:
                raise AgentError(f"消息 ID 重复: {message.id}", code="DUPLICATE_MESSAGE")
            message.status = MessageStatus.QUEUED
            await self._admit(message)
            await self._persist()

        logger.debug(
            f"[{message.id}] 入队: priority={message.priority.value}, size={message.size}B, "
            f"queue={len(self._messages)}/{self._capacity}"
        )

    def peek_ready(self, now: float | None = None) -> list[Message]:
        """
        可调度的消息（按队列次序）

        返回的对象归队列所有，调用方只读。
        """
        now = self._clock() if now is None else now
        ready = [m for m in self._messages.values() if m.is_ready(now)]
        ready.sort(key=Message.sort_key)
        return ready

    async def mark_dispatching(self, message_id: str, now: float | None = None) -> bool:
        """
        认领调度（SELECTING）

        Returns:
            False 表示消息不存在或当前不可调度（单飞保护）
        """
        async with self._lock:
            message = self._messages.get(message_id)
            now = self._clock() if now is None else now
            if message is None or not message.is_ready(now):
                return False
            message.status = MessageStatus.SELECTING
            message.last_attempt_at = now
            await self._persist()
            return True

    async def mark_transmitting(self, message_id: str, transport: str) -> bool:
        """
        记录正在使用的链路（TRANSMITTING）

        在途状态重启后一律重置为 QUEUED，这里只改内存不写快照。
        """
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None or not message.status.is_in_flight:
                return False
            message.status = MessageStatus.TRANSMITTING
            message.assigned_transport = transport
            return True

    async def mark_sent(
        self,
        message_id: str,
        transport: str | None = None,
        attempts: list[AttemptRecord] | None = None,
    ) -> Message | None:
        """发送成功：终态 SENT，移出队列并写入账本"""
        async with self._lock:
            message = self._messages.pop(message_id, None)
            if message is None:
                return None
            message.status = MessageStatus.SENT
            message.assigned_transport = transport
            message.next_retry_at = None
            message.attempt_log.extend(attempts or [])
            self._stats.sent += 1
            await self._record_outcome(message)
            await self._persist()

        logger.info(f"[{message_id}] 已送达 via {transport}")
        return message

    async def mark_failed(
        self,
        message_id: str,
        error: str,
        now: float | None = None,
        attempts: list[AttemptRecord] | None = None,
    ) -> RetryDecision:
        """
        本轮调度失败

        attempts += 1；未达上限则按 base * 2^(attempts-1) 安排重试，
        否则永久失败并移出队列。

        Raises:
            KeyError: 消息不在队列中
        """
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                raise KeyError(message_id)

            now = self._clock() if now is None else now
            message.attempts += 1
            message.last_error = error
            message.last_attempt_at = now
            message.assigned_transport = None
            message.attempt_log.extend(attempts or [])

            if self._retry.should_retry(message.attempts):
                delay = self._retry.get_delay(message.attempts)
                message.status = MessageStatus.RETRY_SCHEDULED
                message.next_retry_at = now + delay
                self._stats.retries_scheduled += 1
                await self._persist()
                decision = RetryDecision(
                    message_id=message_id,
                    attempts=message.attempts,
                    permanent=False,
                    next_retry_at=message.next_retry_at,
                    delay=delay,
                )
                logger.info(
                    f"[{message_id}] 发送失败 ({error})，{delay:.1f}s 后重试 "
                    f"(第 {message.attempts}/{self._retry.max_attempts} 轮)"
                )
                return decision

            del self._messages[message_id]
            message.status = MessageStatus.FAILED
            message.next_retry_at = None
            self._stats.failed += 1
            await self._record_outcome(message)
            await self._persist()

        logger.warning(f"[{message_id}] 永久失败: {error} (共 {message.attempts} 轮)")
        return RetryDecision(message_id=message_id, attempts=message.attempts, permanent=True)

    # ==================== 扩展操作 ====================

    async def release(self, message_id: str) -> bool:
        """中止在途调度但不计失败（如停机），恢复为可调度状态"""
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None or not message.status.is_in_flight:
                return False
            message.status = (
                MessageStatus.RETRY_SCHEDULED if message.next_retry_at else MessageStatus.QUEUED
            )
            message.assigned_transport = None
            await self._persist()
            return True

    async def cancel(self, message_id: str) -> bool:
        """取消（仅 QUEUED 状态可取消）"""
        async with self._lock:
            message = self._messages.get(message_id)
            if message is None or message.status != MessageStatus.QUEUED:
                return False
            del self._messages[message_id]
            message.status = MessageStatus.CANCELLED
            self._stats.cancelled += 1
            await self._record_outcome(message)
            await self._persist()

        logger.info(f"[{message_id}] 已取消")
        return True

    async def update_capacity(self, capacity: int) -> int:
        """
        调整容量

        缩容时按驱逐顺序（低优先级、最旧）移出不在途的消息。

        Returns:
            被驱逐的消息数
        """
        if capacity <= 0:
            raise ValueError(f"capacity 必须为正数: {capacity}")
        evicted = 0
        async with self._lock:
            self._capacity = capacity
            while len(self._messages) > capacity:
                victim = self._lowest(lambda m: not m.status.is_in_flight)
                if victim is None:
                    break
                await self._evict(victim)
                evicted += 1
            await self._persist()

        if len(self._messages) > capacity:
            logger.warning(f"缩容后仍有 {len(self._messages)} 条消息在途，超出容量 {capacity}")
        logger.info(f"队列容量已调整为 {capacity}，驱逐 {evicted} 条")
        return evicted

    async def clear(self) -> int:
        """
        清空队列

        不在途的消息全部记为 CANCELLED；在途消息保留，由调度结果决定终态。

        Returns:
            清除的消息数
        """
        async with self._lock:
            cleared = [m for m in self._messages.values() if not m.status.is_in_flight]
            for message in cleared:
                del self._messages[message.id]
                message.status = MessageStatus.CANCELLED
                message.last_error = CLEARED
                message.next_retry_at = None
                self._stats.cancelled += 1
                await self._record_outcome(message)
            await self._persist()

        logger.info(f"队列已清空: 移除 {len(cleared)} 条，{len(self._messages)} 条在途保留")
        return len(cleared)

    # ==================== 导入导出 ====================

    async def export_queue(self, path: str | Path) -> int:
        """
        导出全部待发送消息（含负载）

        用于设备间交接或刷机前备份。

        Returns:
            导出的消息数
        """
        store = self._require_store()
        async with self._lock:
            messages = sorted(self._messages.values(), key=Message.sort_key)
            await store.export_messages(path, messages, capacity=self._capacity)

        logger.info(f"队列已导出: {len(messages)} 条 -> {path}")
        return len(messages)

    async def import_queue(self, path: str | Path) -> dict[str, int]:
        """
        从导出文件导入

        按队列次序逐条入队，遵守容量与驱逐规则：
        已存在或已有终态的 ID 跳过，终态消息跳过，在途消息重置为 QUEUED。

        Returns:
            {"imported", "skipped", "rejected", "evicted"}
        """
        store = self._require_store()
        incoming = await store.read_export(path)
        incoming.sort(key=Message.sort_key)

        imported = skipped = rejected = 0
        async with self._lock:
            evicted_before = self._stats.evicted
            for message in incoming:
                if (
                    message.status.is_terminal
                    or message.id in self._messages
                    or message.id in self._outcomes
                ):
                    skipped += 1
                    continue
                if message.status.is_in_flight or message.next_retry_at is None:
                    message.status = MessageStatus.QUEUED
                    message.next_retry_at = None
                else:
                    message.status = MessageStatus.RETRY_SCHEDULED
                message.assigned_transport = None
                try:
                    await self._admit(message)
                except CapacityError:
                    rejected += 1
                    continue
                imported += 1
            evicted = self._stats.evicted - evicted_before
            await self._persist()

        logger.info(
            f"队列已导入: {imported} 条，跳过 {skipped} 条，拒绝 {rejected} 条，驱逐 {evicted} 条 <- {path}"
        )
        return {"imported": imported, "skipped": skipped, "rejected": rejected, "evicted": evicted}

    # ==================== 查询 ====================

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def outcome(self, message_id: str) -> dict[str, Any] | None:
        return self._outcomes.get(message_id)

    def status_of(self, message_id: str) -> dict[str, Any] | None:
        """队列中的状态，不在队列时查终态账本"""
        message = self._messages.get(message_id)
        if message is not None:
            return message.status_view()
        record = self._outcomes.get(message_id)
        return dict(record) if record is not None else None

    def messages(self) -> list[Message]:
        """全部消息（按队列次序）"""
        return sorted(self._messages.values(), key=Message.sort_key)

    def items_by_priority(self, priority: Priority | str | None = None) -> list[Message]:
        """指定优先级的消息（按队列次序），缺省时返回全部"""
        if priority is None:
            return self.messages()
        priority = Priority.parse(priority)
        return [m for m in self.messages() if m.priority == priority]

    def next_retry_at(self) -> float | None:
        """最早的重试时间"""
        times = [
            m.next_retry_at for m in self._messages.values()
            if m.status == MessageStatus.RETRY_SCHEDULED and m.next_retry_at is not None
        ]
        return min(times) if times else None

    def stats(self) -> dict[str, Any]:
        data: dict[str, Any] = self._stats.to_dict()
        data["size"] = len(self._messages)
        data["capacity"] = self._capacity
        data["utilization"] = round(len(self._messages) / self._capacity, 4)
        return data

    def analytics(self, now: float | None = None) -> dict[str, Any]:
        """状态分布、优先级分布、平均等待时长与重试统计"""
        now = self._clock() if now is None else now
        messages = list(self._messages.values())

        by_status = {status.value: 0 for status in MessageStatus if not status.is_terminal}
        by_priority = {priority.value: 0 for priority in Priority}
        for message in messages:
            by_status[message.status.value] += 1
            by_priority[message.priority.value] += 1

        ages = [now - m.created_at for m in messages]
        retried = [m.attempts for m in messages if m.attempts > 0]

        return {
            "total": len(messages),
            "capacity": self._capacity,
            "by_status": by_status,
            "by_priority": by_priority,
            "average_age_seconds": round(sum(ages) / len(ages), 3) if ages else 0.0,
            "oldest_age_seconds": round(max(ages), 3) if ages else 0.0,
            "retry": {
                "messages_retrying": len(retried),
                "average_attempts": round(sum(retried) / len(retried), 3) if retried else 0.0,
                "max_attempts": max(retried) if retried else 0,
            },
            "outcomes_recorded": len(self._outcomes),
        }

    # ==================== 内部方法 ====================

    def _require_store(self) -> QueueStore:
        if self._store is None:
            raise AgentError("队列未配置持久化存储", code="STORAGE_UNAVAILABLE")
        return self._store

    async def _admit(self, message: Message) -> None:
        """放入队列（调用方持锁并设置状态），满时驱逐或拒绝"""
        if len(self._messages) >= self._capacity:
            victim = self._lowest(
                lambda m: m.priority.rank < message.priority.rank and not m.status.is_in_flight
            )
            if victim is None:
                self._stats.rejected += 1
                raise CapacityError(
                    f"队列已满 ({self._capacity})，{message.priority.value} 消息被拒绝",
                    capacity=self._capacity,
                )
            await self._evict(victim)

        self._seq += 1
        message.seq = self._seq
        if not message.created_at:
            message.created_at = self._clock()
        self._messages[message.id] = message
        self._stats.enqueued += 1

    def _lowest(self, predicate: Callable[[Message], bool]) -> Message | None:
        """满足条件的消息中优先级最低、最旧的一条"""
        candidates = [m for m in self._messages.values() if predicate(m)]
        if not candidates:
            return None
        return min(candidates, key=lambda m: (m.priority.rank, m.created_at, m.seq))

    async def _evict(self, victim: Message) -> None:
        del self._messages[victim.id]
        victim.status = MessageStatus.FAILED
        victim.last_error = EVICTED
        victim.next_retry_at = None
        self._stats.evicted += 1
        await self._record_outcome(victim)
        logger.warning(
            f"[{victim.id}] 队列已满，驱逐 {victim.priority.value} 消息 "
            f"(created_at={victim.created_at:.3f})"
        )

    async def _record_outcome(self, message: Message) -> None:
        record = outcome_record(message, finished_at=self._clock())
        self._outcomes[message.id] = record
        self._trim_outcomes()
        if self._store is None:
            return
        try:
            await self._store.append_outcome(record)
        except AgentError as e:
            self._stats.persist_failures += 1
            logger.error(f"[{message.id}] 终态记录写入失败: {e.message}")

    def _trim_outcomes(self) -> None:
        """终态记录超出上限时丢弃 finished_at 最早的"""
        excess = len(self._outcomes) - self._max_outcomes
        if excess <= 0:
            return
        oldest = heapq.nsmallest(
            excess, self._outcomes.values(), key=lambda r: r.get("finished_at") or 0
        )
        for record in oldest:
            self._outcomes.pop(record["id"], None)

    async def _persist(self) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_snapshot(list(self._messages.values()))
        except AgentError as e:
            self._stats.persist_failures += 1
            logger.error(f"队列快照写入失败: {e.message}")
