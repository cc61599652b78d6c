"""
GSM/GPRS 蜂窝驱动

建链：上电 -> SIM 检查 -> 网络注册。
不超过 160 字节的帧走短信，更大的帧走数据会话（sms_only 时上限 160）。
"""

from dataclasses import dataclass

from loguru import logger

from seacomm_agent.domain.enums import FailureReason, Priority, TransportKind
from seacomm_agent.domain.errors import TransmissionError
from seacomm_agent.domain.models import DeliveryReceipt
from seacomm_agent.transport.base import DriverConfig, TransportDriver

SMS_MAX_BYTES = 160


@dataclass
class CellularConfig(DriverConfig):
    """蜂窝配置"""

    apn: str = "internet"
    carrier: str = ""
    sim_number: str | None = None
    sim_present: bool = True
    sms_recipient: str = ""
    sms_only: bool = False
    sms_cost: float = 0.05                   # 每条短信成本

    max_payload_bytes: int = 1400            # 数据会话单帧上限
    min_signal_quality: float = 15.0
    cost_per_byte: float = 0.0001            # 数据会话每字节成本
    typical_latency_ms: float = 2500.0
    degraded_signal_margin: float = 5.0


def signal_label(signal: float | None) -> str:
    """信号质量标签"""
    if signal is None:
        return "unknown"
    if signal >= 25:
        return "excellent"
    if signal >= 20:
        return "good"
    if signal >= 15:
        return "fair"
    return "poor"


class CellularDriver(TransportDriver):
    """GSM 蜂窝驱动"""

    kind = TransportKind.CELLULAR
    SIGNAL_RANGE = (10.0, 40.0)
    SMS_LATENCY_MS = (2000.0, 5000.0)
    DATA_LATENCY_MS = (800.0, 2500.0)
    POWER_ON_MS = 1000.0
    REGISTER_MS = 2000.0

    def __init__(self, name=None, config: CellularConfig | None = None, faults=None):
        super().__init__(name, config, faults)
        self._registered = False

    @classmethod
    def default_config(cls) -> CellularConfig:
        return CellularConfig()

    @property
    def max_payload_bytes(self) -> int:
        if self._config.sms_only:
            return SMS_MAX_BYTES
        return max(self._config.max_payload_bytes, SMS_MAX_BYTES)

    @property
    def cost_per_byte(self) -> float:
        if self._config.sms_only:
            return self._config.sms_cost / SMS_MAX_BYTES
        return self._config.cost_per_byte

    @property
    def signal_label(self) -> str:
        return signal_label(self._signal)

    def channel_for(self, size: int) -> str:
        """按帧大小选择短信或数据通道"""
        return "sms" if size <= SMS_MAX_BYTES else "data"

    async def _acquire(self) -> None:
        await self._faults.delay(self.POWER_ON_MS)
        if self._faults.connect_fails():
            raise self._connection_failure("power_on", "GSM 模块上电失败")

        if not self._config.sim_present:
            raise self._connection_failure("sim_check", "未检测到 SIM 卡")
        logger.debug(f"[{self.name}] SIM 就绪: {self._config.sim_number or '-'}")

        await self._faults.delay(self.REGISTER_MS)
        if self._faults.connect_fails():
            raise self._connection_failure("register", "网络注册失败")

        self._registered = True
        self._update_signal(self._sample_signal())
        logger.info(
            f"[{self.name}] 已注册网络: carrier={self._config.carrier or '-'}, "
            f"apn={self._config.apn}, signal={self.signal_label}"
        )

    async def _release(self) -> None:
        self._registered = False

    async def _transmit(self, payload: bytes, priority: Priority) -> DeliveryReceipt:
        channel = self.channel_for(len(payload))
        if channel == "sms":
            latency = self._faults.latency(self.SMS_LATENCY_MS)
            cost = self._config.sms_cost
        else:
            latency = self._faults.latency(self.DATA_LATENCY_MS)
            cost = len(payload) * self._config.cost_per_byte

        if self._faults.interrupted():
            await self._faults.delay(latency / 2)
            raise TransmissionError(
                FailureReason.LINK_INTERRUPTED, f"{channel} 会话中断", transport=self.name
            )

        await self._faults.delay(latency)

        if self._faults.no_ack():
            raise TransmissionError(
                FailureReason.NO_ACKNOWLEDGEMENT, f"{channel} 未收到回执", transport=self.name
            )

        return DeliveryReceipt(
            transport=self.name,
            bytes_sent=len(payload),
            elapsed_ms=latency,
            cost=cost,
            channel=channel,
            details={
                "signal_label": self.signal_label,
                "recipient": self._config.sms_recipient if channel == "sms" else None,
            },
        )
