"""
通信 Agent

把压缩管线、发送队列、链路选择器与链路注册表串起来：
- submit: 构造消息、按最大可达帧上限预估编码、入队，立即返回
- 排空周期: peek_ready -> 选择链路 -> 标记发送中 -> 派生调度任务
- 顺序调度: 按计划逐条链路尝试，全部失败计一次 mark_failed
- 广播调度（CRITICAL）: 所有可用链路并发发送，任一成功即成功
- 同一消息同一时刻只有一个调度任务
"""

import asyncio
import contextlib
import time
from collections.abc import Callable
from functools import partial
from typing import Any

from loguru import logger

from seacomm_agent.compression.pipeline import CompressionPipeline
from seacomm_agent.domain.enums import (
    DispatchMode,
    FailureReason,
    MessageStatus,
    Priority,
)
from seacomm_agent.domain.errors import TransmissionError
from seacomm_agent.domain.models import (
    AttemptRecord,
    CompressionResult,
    DeliveryReceipt,
    DispatchOutcome,
    Message,
    SelectionPlan,
)
from seacomm_agent.engine.outbox import TransmissionQueue
from seacomm_agent.engine.policies import DispatchPolicy
from seacomm_agent.engine.selector import ProtocolSelector
from seacomm_agent.transport.registry import TransportRegistry
from seacomm_agent.utils.exceptions import map_exception
from seacomm_agent.utils.ids import generate_message_id


class TransportStats:
    """单条链路的发送统计（Agent 视角）"""

    def __init__(self):
        self.attempts = 0
        self.successes = 0
        self.failures = 0
        self.bytes_sent = 0
        self.total_cost = 0.0
        self.failure_reasons: dict[str, int] = {}

    def record(self, record: AttemptRecord, receipt: DeliveryReceipt | None) -> None:
        self.attempts += 1
        if record.ok and receipt is not None:
            self.successes += 1
            self.bytes_sent += receipt.bytes_sent
            self.total_cost += receipt.cost
        else:
            self.failures += 1
            reason = record.error or "unknown"
            self.failure_reasons[reason] = self.failure_reasons.get(reason, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": round(self.successes / self.attempts, 4) if self.attempts else None,
            "bytes_sent": self.bytes_sent,
            "total_cost": round(self.total_cost, 6),
            "failure_reasons": dict(self.failure_reasons),
        }


class CommunicationAgent:
    """通信 Agent"""

    def __init__(
        self,
        registry: TransportRegistry,
        queue: TransmissionQueue,
        pipeline: CompressionPipeline | None = None,
        selector: ProtocolSelector | None = None,
        policy: DispatchPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._queue = queue
        self._pipeline = pipeline or CompressionPipeline()
        self._selector = selector or ProtocolSelector()
        self._policy = policy or DispatchPolicy()
        self._clock = clock

        self._inflight: dict[str, asyncio.Task] = {}
        self._inflight_priority: dict[str, Priority] = {}
        self._drain_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._drain_task: asyncio.Task | None = None
        self._running = False

        self._callbacks: list[Callable] = []
        self._transport_stats: dict[str, TransportStats] = {}
        self._counters = {
            "submitted": 0,
            "sent": 0,
            "failed": 0,
            "retries": 0,
            "dispatches": 0,
            "broadcasts": 0,
            "no_transport": 0,
            "oversize_at_submit": 0,
        }

    # ==================== 属性 ====================

    @property
    def queue(self) -> TransmissionQueue:
        return self._queue

    @property
    def registry(self) -> TransportRegistry:
        return self._registry

    @property
    def pipeline(self) -> CompressionPipeline:
        return self._pipeline

    @property
    def selector(self) -> ProtocolSelector:
        return self._selector

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    # ==================== 对外接口 ====================

    async def submit(self, payload: bytes, priority: Priority | str = Priority.NORMAL) -> str:
        """
        提交消息

        Args:
            payload: 不透明负载
            priority: 优先级

        Returns:
            消息 ID

        Raises:
            CapacityError: 队列已满且无可驱逐消息
        """
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise TypeError(f"payload 必须是 bytes，实际为 {type(payload).__name__}")
        priority = Priority.parse(priority)
        message = Message(
            id=generate_message_id(),
            payload=bytes(payload),
            priority=priority,
            created_at=self._clock(),
        )

        limit = self._registry.largest_reachable_payload()
        if limit is not None:
            encoded = self._pipeline.encode_for(message.payload, limit)
            if encoded is None:
                self._counters["oversize_at_submit"] += 1
                logger.warning(
                    f"[{message.id}] {message.size}B 超出所有可达链路上限 ({limit}B)，仍入队等待"
                )
            else:
                message.encoding = encoded.method

        await self._queue.enqueue(message)
        self._counters["submitted"] += 1
        self._wake.set()
        logger.info(
            f"[{message.id}] 已提交: priority={priority.value}, size={message.size}B, "
            f"encoding={message.encoding or '-'}"
        )
        return message.id

    def status(self, message_id: str) -> dict[str, Any] | None:
        """消息状态（队列或终态账本），未知 ID 返回 None"""
        return self._queue.status_of(message_id)

    async def cancel(self, message_id: str) -> bool:
        """取消排队中的消息，在途消息不可取消"""
        if message_id in self._inflight:
            return False
        return await self._queue.cancel(message_id)

    async def export_queue(self, path) -> int:
        """导出待发送消息"""
        return await self._queue.export_queue(path)

    async def import_queue(self, path) -> dict[str, int]:
        """导入其他设备导出的消息并唤醒排空循环"""
        result = await self._queue.import_queue(path)
        if result["imported"]:
            self._wake.set()
        return result

    async def clear_queue(self) -> int:
        """清空排队中的消息（在途消息不受影响）"""
        return await self._queue.clear()

    def on_outcome(self, callback: Callable) -> None:
        """注册调度结果回调 callback(DispatchOutcome)"""
        self._callbacks.append(callback)

    # ==================== 生命周期 ====================

    async def start(self) -> None:
        """恢复队列并启动排空循环"""
        if self._running:
            return
        await self._queue.load()
        self._running = True
        self._stop_event.clear()
        self._wake.set()
        self._drain_task = asyncio.create_task(self._drain_loop())
        logger.info(
            f"通信 Agent 已启动: 待发送 {len(self._queue)} 条，"
            f"链路 {self._registry.names}"
        )

    async def stop(self, grace_period: float | None = None) -> None:
        """
        停止

        Args:
            grace_period: 等待在途调度完成的时间（秒），超时后取消并恢复为可调度
        """
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        self._wake.set()

        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
        self._drain_task = None

        grace = self._policy.stop_grace_period if grace_period is None else grace_period
        tasks = list(self._inflight.values())
        if tasks:
            logger.info(f"等待 {len(tasks)} 个在途调度完成 (最多 {grace}s)")
            _, pending = await asyncio.wait(tasks, timeout=grace)
            for task in pending:
                task.cancel()
            for task in pending:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        logger.info("通信 Agent 已停止")

    # ==================== 排空周期 ====================

    async def drain_once(self, wait: bool = False) -> int:
        """
        执行一次排空

        Args:
            wait: 是否等待本轮派生的调度任务全部结束

        Returns:
            本轮派生的调度任务数
        """
        spawned: list[asyncio.Task] = []
        async with self._drain_lock:
            now = self._clock()
            ready = self._queue.peek_ready(now)
            if not ready:
                return 0
            snapshots = self._registry.snapshots()

            for message in ready:
                if message.id in self._inflight:
                    continue
                critical = message.priority == Priority.CRITICAL
                if not critical and self._bounded_inflight() >= self._policy.max_concurrent_dispatches:
                    continue

                plan = self._selector.select(snapshots, message.priority)
                if plan.is_empty:
                    self._counters["no_transport"] += 1
                    logger.debug(f"[{message.id}] 无可用链路，保持排队")
                    continue

                if not await self._queue.mark_dispatching(message.id, now):
                    continue

                task = asyncio.create_task(self._dispatch(message.id, plan))
                self._inflight[message.id] = task
                self._inflight_priority[message.id] = message.priority
                task.add_done_callback(partial(self._on_task_done, message.id))
                spawned.append(task)

        if wait and spawned:
            await asyncio.gather(*spawned, return_exceptions=True)
        return len(spawned)

    async def _drain_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake.clear()
            try:
                await self.drain_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"排空周期异常: {e}")

            timeout = self._next_wait()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except TimeoutError:
                pass

    def _next_wait(self) -> float:
        """下一次排空前的等待时间：周期与最近重试时间取小"""
        interval = self._policy.drain_interval
        next_retry = self._queue.next_retry_at()
        if next_retry is None:
            return interval
        return max(0.0, min(interval, next_retry - self._clock()))

    def _bounded_inflight(self) -> int:
        return sum(
            1 for priority in self._inflight_priority.values()
            if priority != Priority.CRITICAL
        )

    def _on_task_done(self, message_id: str, task: asyncio.Task) -> None:
        self._inflight.pop(message_id, None)
        self._inflight_priority.pop(message_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{message_id}] 调度任务异常: {task.exception()}")
        # 释放了并发名额
        self._wake.set()

    # ==================== 调度 ====================

    async def _dispatch(self, message_id: str, plan: SelectionPlan) -> DispatchOutcome | None:
        message = self._queue.get(message_id)
        if message is None:
            return None

        self._counters["dispatches"] += 1
        try:
            if plan.mode == DispatchMode.BROADCAST:
                self._counters["broadcasts"] += 1
                outcome = await self._broadcast(message, plan)
            else:
                outcome = await self._sequential(message, plan)
        except asyncio.CancelledError:
            await self._queue.release(message_id)
            raise
        except Exception as e:
            logger.error(f"[{message_id}] 调度异常，恢复为可调度: {e}")
            await self._queue.release(message_id)
            return None

        await self._emit(outcome)
        return outcome

    async def _sequential(self, message: Message, plan: SelectionPlan) -> DispatchOutcome:
        cache: dict[str, CompressionResult] = {}
        records: list[AttemptRecord] = []
        last_reason: FailureReason | None = None

        for name in plan.transports:
            await self._queue.mark_transmitting(message.id, name)
            record, reason = await self._attempt(message, name, cache)
            records.append(record)
            if record.ok:
                return await self._succeed(message, plan, name, records)
            last_reason = reason
            logger.debug(f"[{message.id}] {name} 失败 ({record.error})，尝试下一条链路")

        return await self._fail(message, plan, records, last_reason)

    async def _broadcast(self, message: Message, plan: SelectionPlan) -> DispatchOutcome:
        logger.warning(
            f"[{message.id}] CRITICAL 消息广播: {plan.transports}"
        )
        cache: dict[str, CompressionResult] = {}
        await self._queue.mark_transmitting(message.id, ",".join(plan.transports))
        results = await asyncio.gather(
            *(self._attempt(message, name, cache) for name in plan.transports)
        )
        records = [record for record, _ in results]
        succeeded = [record.transport for record in records if record.ok]
        if succeeded:
            return await self._succeed(message, plan, succeeded[0], records)

        reasons = [reason for _, reason in results if reason is not None]
        return await self._fail(message, plan, records, reasons[-1] if reasons else None)

    async def _attempt(
        self,
        message: Message,
        name: str,
        cache: dict[str, CompressionResult],
    ) -> tuple[AttemptRecord, FailureReason | None]:
        """在单条链路上尝试一次，不抛出 TransmissionError"""
        started = self._clock()
        perf_started = time.perf_counter()
        driver = self._registry.get(name)
        receipt: DeliveryReceipt | None = None

        def _elapsed() -> float:
            return (time.perf_counter() - perf_started) * 1000

        if driver is None:
            error = TransmissionError(
                FailureReason.LINK_INTERRUPTED, "链路未注册", transport=name
            )
        else:
            encoded = self._pipeline.encode_for(message.payload, driver.max_payload_bytes, cache)
            if encoded is None:
                error = TransmissionError(
                    FailureReason.PAYLOAD_TOO_LARGE,
                    f"{message.size}B 无法编码到 {driver.max_payload_bytes}B 以内",
                    transport=name,
                )
            else:
                try:
                    receipt = await driver.send(
                        encoded.frame,
                        timeout=self._policy.send_timeout,
                        priority=message.priority,
                    )
                    error = None
                except TransmissionError as e:
                    error = e
                except Exception as e:
                    mapped = map_exception(e, transport=name)
                    error = mapped if isinstance(mapped, TransmissionError) else TransmissionError(
                        FailureReason.LINK_INTERRUPTED, str(e), transport=name
                    )
                    logger.error(f"[{message.id}] {name} 发送异常: {e}")

        record = AttemptRecord(
            transport=name,
            ok=error is None,
            at=started,
            elapsed_ms=receipt.elapsed_ms if receipt is not None else _elapsed(),
            error=error.reason.value if error is not None else None,
        )
        self._transport_stats.setdefault(name, TransportStats()).record(record, receipt)
        return record, error.reason if error is not None else None

    async def _succeed(
        self,
        message: Message,
        plan: SelectionPlan,
        transport: str,
        records: list[AttemptRecord],
    ) -> DispatchOutcome:
        await self._queue.mark_sent(message.id, transport=transport, attempts=records)
        self._counters["sent"] += 1
        return DispatchOutcome(
            message_id=message.id,
            priority=message.priority,
            ok=True,
            mode=plan.mode,
            status=MessageStatus.SENT,
            transport=transport,
            attempts=records,
        )

    async def _fail(
        self,
        message: Message,
        plan: SelectionPlan,
        records: list[AttemptRecord],
        reason: FailureReason | None,
    ) -> DispatchOutcome:
        last = records[-1] if records else None
        error = f"{last.transport}:{last.error}" if last else "no attempt"
        decision = await self._queue.mark_failed(
            message.id, error, now=self._clock(), attempts=records
        )
        if decision.permanent:
            self._counters["failed"] += 1
        else:
            self._counters["retries"] += 1
        return DispatchOutcome(
            message_id=message.id,
            priority=message.priority,
            ok=False,
            mode=plan.mode,
            status=MessageStatus.FAILED if decision.permanent else MessageStatus.RETRY_SCHEDULED,
            attempts=records,
            failure=reason,
            retry=decision,
        )

    async def _emit(self, outcome: DispatchOutcome) -> None:
        for callback in self._callbacks:
            try:
                result = callback(outcome)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"[{outcome.message_id}] 结果回调异常: {e}")

    # ==================== 统计 ====================

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._counters,
            "inflight": len(self._inflight),
            "queue": self._queue.stats(),
            "transports": {
                name: stats.to_dict() for name, stats in sorted(self._transport_stats.items())
            },
            "compression": self._pipeline.get_stats(),
        }
