"""
链路驱动抽象基类

每种物理介质（无线电、蜂窝、卫星、WiFi）一个驱动。驱动负责：
- 建链（connect，幂等）与断链
- 单条消息发送（同一驱动上的发送串行化）
- 信号 / 时延 / 成功率的滚动估计（EWMA），在下一次快照中体现
- 自身连接状态的唯一写入方
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from seacomm_agent.domain.enums import (
    ConnectionState,
    FailureReason,
    Priority,
    TransportKind,
)
from seacomm_agent.domain.errors import ConnectionError, TransmissionError
from seacomm_agent.domain.models import DeliveryReceipt, TransportSnapshot
from seacomm_agent.transport.faults import FaultModel


@dataclass
class DriverConfig:
    """驱动通用配置"""

    enabled: bool = True
    max_payload_bytes: int = 256             # 单帧上限（字节）
    min_signal_quality: float = 0.0          # 可用信号下限（0-100）
    cost_per_byte: float = 0.0               # 每字节成本
    typical_latency_ms: float = 1000.0       # 初始时延估计
    degraded_signal_margin: float = 10.0     # 信号低于 下限+余量 视为 DEGRADED
    max_consecutive_failures: int = 3        # 连续链路失败次数达到后置为 FAILED


@dataclass
class DriverStats:
    """驱动发送统计"""

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    bytes_sent: int = 0
    total_cost: float = 0.0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "bytes_sent": self.bytes_sent,
            "total_cost": round(self.total_cost, 6),
            "last_error": self.last_error,
        }


class TransportDriver(ABC):
    """
    链路驱动基类

    子类实现 _acquire（多步建链）与 _transmit（单帧发送），
    其余状态维护、超时、统计由基类完成。
    """

    kind: TransportKind
    SIGNAL_RANGE: tuple[float, float] = (40.0, 90.0)   # 默认信号采样范围
    SIGNAL_ALPHA = 0.3                                 # 信号 EWMA 系数
    LATENCY_ALPHA = 0.3                                # 时延 EWMA 系数
    SUCCESS_ALPHA = 0.2                                # 成功率 EWMA 系数

    def __init__(
        self,
        name: str | None = None,
        config: DriverConfig | None = None,
        faults: FaultModel | None = None,
    ):
        self.name = name or self.kind.value
        self._config = config or self.default_config()
        self._faults = faults or FaultModel()

        self._state = ConnectionState.DISCONNECTED
        self._send_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()

        # 滚动估计
        self._signal: float | None = None
        self._latency_ms = float(self._config.typical_latency_ms)
        self._success_rate = 1.0
        self._consecutive_failures = 0

        self._stats = DriverStats()
        self._on_state_change: Callable | None = None

    @classmethod
    def default_config(cls) -> DriverConfig:
        return DriverConfig()

    # ==================== 属性 ====================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def config(self) -> DriverConfig:
        return self._config

    @property
    def faults(self) -> FaultModel:
        return self._faults

    @property
    def is_usable(self) -> bool:
        return self._state.is_usable

    @property
    def max_payload_bytes(self) -> int:
        return self._config.max_payload_bytes

    @property
    def cost_per_byte(self) -> float:
        return self._config.cost_per_byte

    @property
    def signal_quality(self) -> float | None:
        return self._signal

    @property
    def stats(self) -> DriverStats:
        return self._stats

    # ==================== 生命周期 ====================

    async def connect(self) -> bool:
        """
        建立链路

        已处于 READY/DEGRADED 时立即返回。失败时状态置为 FAILED
        并抛出 ConnectionError。

        Returns:
            是否连接成功
        """
        if self._state.is_usable:
            return True

        async with self._connect_lock:
            if self._state.is_usable:
                return True

            await self._set_state(ConnectionState.CONNECTING)
            try:
                await self._acquire()
            except ConnectionError as e:
                e.transport = e.transport or self.name
                await self._set_state(ConnectionState.FAILED)
                logger.warning(f"[{self.name}] 建链失败: {e.message} (stage={e.stage})")
                raise
            except Exception as e:
                await self._set_state(ConnectionState.FAILED)
                logger.warning(f"[{self.name}] 建链异常: {e}")
                raise ConnectionError(
                    f"{self.name} 建链异常: {e}", transport=self.name
                ) from e

            self._consecutive_failures = 0
            await self._set_state(self._evaluate_state())
            logger.info(
                f"[{self.name}] 链路就绪: state={self._state.value}, signal={self._format_signal()}"
            )
            return True

    async def disconnect(self) -> None:
        """断开链路"""
        async with self._connect_lock:
            if self._state == ConnectionState.DISCONNECTED:
                return
            try:
                await self._release()
            finally:
                await self._set_state(ConnectionState.DISCONNECTED)
            logger.info(f"[{self.name}] 链路已断开")

    # ==================== 发送 ====================

    async def send(
        self,
        payload: bytes,
        timeout: float | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> DeliveryReceipt:
        """
        发送单帧

        Args:
            payload: 已编码的帧
            timeout: 本次调用的超时（秒），覆盖等待链路空闲与发送，超时视为 LINK_INTERRUPTED
            priority: 消息优先级（部分介质据此计费）

        Returns:
            发送回执

        Raises:
            TransmissionError: 发送失败
        """
        self._ensure_usable()
        if len(payload) > self.max_payload_bytes:
            raise TransmissionError(
                FailureReason.PAYLOAD_TOO_LARGE,
                f"{len(payload)} 字节超出上限 {self.max_payload_bytes}",
                transport=self.name,
            )

        # 等锁与发送共用同一截止时间
        deadline = asyncio.get_running_loop().time() + timeout if timeout is not None else None
        try:
            async with asyncio.timeout_at(deadline):
                await self._send_lock.acquire()
        except TimeoutError:
            # 链路被其他消息占用，不计入链路失败
            logger.debug(f"[{self.name}] 等待链路空闲超时 ({timeout}s)")
            raise TransmissionError(
                FailureReason.LINK_INTERRUPTED,
                f"等待链路空闲超时 ({timeout}s)",
                transport=self.name,
            ) from None

        try:
            # 等锁期间链路可能已失效
            self._ensure_usable()
            self._stats.attempts += 1

            signal = self._sample_signal()
            self._update_signal(signal)
            if signal is not None and signal < self._config.min_signal_quality:
                error = TransmissionError(
                    FailureReason.INSUFFICIENT_SIGNAL,
                    f"信号 {signal:.0f} 低于下限 {self._config.min_signal_quality:.0f}",
                    transport=self.name,
                )
                await self._record_failure(error)
                raise error

            started = time.monotonic()
            try:
                async with asyncio.timeout_at(deadline):
                    receipt = await self._transmit(payload, priority)
            except TimeoutError:
                error = TransmissionError(
                    FailureReason.LINK_INTERRUPTED,
                    f"发送超时 ({timeout}s)",
                    transport=self.name,
                )
                await self._record_failure(error)
                raise error from None
            except TransmissionError as e:
                e.transport = e.transport or self.name
                await self._record_failure(e)
                raise

            logger.debug(
                f"[{self.name}] 发送成功: {receipt.bytes_sent}B, "
                f"{receipt.elapsed_ms:.0f}ms (wall {(time.monotonic() - started) * 1000:.1f}ms)"
            )
            await self._record_success(receipt)
            return receipt
        finally:
            self._send_lock.release()

    # ==================== 状态查询 ====================

    def status(self) -> TransportSnapshot:
        """链路快照"""
        return TransportSnapshot(
            name=self.name,
            kind=self.kind,
            connection_state=self._state,
            max_payload_bytes=self.max_payload_bytes,
            cost_per_byte=self.cost_per_byte,
            typical_latency_ms=self._latency_ms,
            signal_quality=self._signal,
            min_signal_quality=self._config.min_signal_quality,
            success_rate=self._success_rate,
        )

    async def health_check(self) -> bool:
        """
        健康检查

        刷新信号估计并探测链路。探测失败计入连续失败次数。

        Returns:
            链路是否可用
        """
        if not self._state.is_usable:
            return False

        self._update_signal(self._sample_signal())
        if not await self._probe():
            self._consecutive_failures += 1
            if self._consecutive_failures >= self._config.max_consecutive_failures:
                await self._set_state(ConnectionState.FAILED)
                logger.warning(f"[{self.name}] 健康检查连续失败，链路置为 FAILED")
                return False
        await self._set_state(self._evaluate_state())
        return self._state.is_usable

    def get_status(self) -> dict[str, Any]:
        """状态信息字典"""
        data = self.status().to_dict()
        data["stats"] = self._stats.to_dict()
        data["consecutive_failures"] = self._consecutive_failures
        return data

    # ==================== 回调注册 ====================

    def on_state_change(self, callback: Callable) -> None:
        """注册状态变更回调 callback(name, old_state, new_state)"""
        self._on_state_change = callback

    # ==================== 子类实现 ====================

    @abstractmethod
    async def _acquire(self) -> None:
        """多步建链，失败抛出 ConnectionError"""
        pass

    @abstractmethod
    async def _transmit(self, payload: bytes, priority: Priority) -> DeliveryReceipt:
        """发送单帧，失败抛出 TransmissionError"""
        pass

    async def _release(self) -> None:
        """释放链路资源"""
        return None

    async def _probe(self) -> bool:
        """健康探测"""
        return True

    def _sample_signal(self) -> float | None:
        """采样当前信号质量"""
        return self._faults.signal(self.SIGNAL_RANGE)

    # ==================== 内部方法 ====================

    def _ensure_usable(self) -> None:
        if not self._state.is_usable:
            raise TransmissionError(
                FailureReason.LINK_INTERRUPTED,
                f"链路不可用: {self._state.value}",
                transport=self.name,
            )

    def _connection_failure(self, stage: str, message: str) -> ConnectionError:
        return ConnectionError(message, transport=self.name, stage=stage)

    def _update_signal(self, sample: float | None) -> None:
        if sample is None:
            return
        if self._signal is None:
            self._signal = sample
        else:
            self._signal += self.SIGNAL_ALPHA * (sample - self._signal)

    def _evaluate_state(self) -> ConnectionState:
        """根据滚动估计给出 READY 或 DEGRADED"""
        if self._success_rate < 0.5:
            return ConnectionState.DEGRADED
        threshold = self._config.min_signal_quality + self._config.degraded_signal_margin
        if self._signal is not None and self._signal < threshold:
            return ConnectionState.DEGRADED
        return ConnectionState.READY

    async def _record_success(self, receipt: DeliveryReceipt) -> None:
        self._stats.successes += 1
        self._stats.bytes_sent += receipt.bytes_sent
        self._stats.total_cost += receipt.cost
        self._latency_ms += self.LATENCY_ALPHA * (receipt.elapsed_ms - self._latency_ms)
        self._success_rate += self.SUCCESS_ALPHA * (1.0 - self._success_rate)
        self._consecutive_failures = 0
        await self._set_state(self._evaluate_state())

    async def _record_failure(self, error: TransmissionError) -> None:
        self._stats.failures += 1
        self._stats.last_error = error.reason.value
        self._success_rate += self.SUCCESS_ALPHA * (0.0 - self._success_rate)
        logger.debug(f"[{self.name}] 发送失败: {error}")

        if error.reason in (FailureReason.LINK_INTERRUPTED, FailureReason.NO_ACKNOWLEDGEMENT):
            self._consecutive_failures += 1
        if self._consecutive_failures >= self._config.max_consecutive_failures:
            await self._set_state(ConnectionState.FAILED)
            logger.warning(
                f"[{self.name}] 连续失败 {self._consecutive_failures} 次，链路置为 FAILED"
            )
        else:
            await self._set_state(self._evaluate_state())

    async def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        logger.debug(f"[{self.name}] 状态变更: {old_state.value} -> {new_state.value}")

        if self._on_state_change:
            try:
                result = self._on_state_change(self.name, old_state, new_state)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"[{self.name}] 状态变更回调异常: {e}")

    def _format_signal(self) -> str:
        return f"{self._signal:.0f}" if self._signal is not None else "-"
