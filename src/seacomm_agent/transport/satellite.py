"""
卫星通信驱动

全球覆盖、高成本、高时延。建链为捕获卫星（视野内 1-3 颗，0 颗失败）
加链路建立。CRITICAL 消息按紧急信标处理，不计费。
"""

from dataclasses import dataclass

from loguru import logger

from seacomm_agent.domain.enums import FailureReason, Priority, TransportKind
from seacomm_agent.domain.errors import TransmissionError
from seacomm_agent.domain.models import DeliveryReceipt
from seacomm_agent.transport.base import DriverConfig, TransportDriver

DEFAULT_BASE_COST = {
    "iridium": 0.15,
}
FALLBACK_BASE_COST = 0.10


@dataclass
class SatelliteConfig(DriverConfig):
    """卫星配置"""

    system: str = "iridium"
    base_cost: float | None = None           # 每条消息基础费用，None 按系统取默认
    cost_per_kb: float = 0.05

    max_payload_bytes: int = 340
    min_signal_quality: float = 20.0
    typical_latency_ms: float = 10000.0


class SatelliteDriver(TransportDriver):
    """卫星驱动"""

    kind = TransportKind.SATELLITE
    SIGNAL_RANGE = (50.0, 90.0)
    LATENCY_MS = (5000.0, 15000.0)
    ACQUIRE_MS = 3000.0
    LINK_MS = 2000.0

    def __init__(self, name=None, config: SatelliteConfig | None = None, faults=None):
        super().__init__(name, config, faults)
        self._satellites_in_view = 0

    @classmethod
    def default_config(cls) -> SatelliteConfig:
        return SatelliteConfig()

    @property
    def base_cost(self) -> float:
        if self._config.base_cost is not None:
            return self._config.base_cost
        return DEFAULT_BASE_COST.get(self._config.system.lower(), FALLBACK_BASE_COST)

    @property
    def cost_per_byte(self) -> float:
        # 满帧时摊到每字节的费用
        return self.base_cost / self.max_payload_bytes + self._config.cost_per_kb / 1024

    @property
    def satellites_in_view(self) -> int:
        return self._satellites_in_view

    def message_cost(self, size: int, priority: Priority = Priority.NORMAL) -> float:
        """单条消息费用（紧急信标免费）"""
        if priority == Priority.CRITICAL:
            return 0.0
        return self.base_cost + size / 1024 * self._config.cost_per_kb

    async def reset_connection(self) -> bool:
        """断开并重新捕获卫星"""
        logger.info(f"[{self.name}] 重置卫星连接")
        await self.disconnect()
        return await self.connect()

    async def _acquire(self) -> None:
        await self._faults.delay(self.ACQUIRE_MS)
        self._satellites_in_view = 0 if self._faults.connect_fails() else self._faults.randint(1, 3)
        if self._satellites_in_view == 0:
            raise self._connection_failure("acquire", "视野内无可用卫星")
        logger.debug(f"[{self.name}] 捕获卫星 {self._satellites_in_view} 颗")

        await self._faults.delay(self.LINK_MS)
        if self._faults.connect_fails():
            raise self._connection_failure("link", f"{self._config.system} 链路建立失败")

        self._update_signal(self._sample_signal())

    async def _release(self) -> None:
        self._satellites_in_view = 0

    async def _transmit(self, payload: bytes, priority: Priority) -> DeliveryReceipt:
        latency = self._faults.latency(self.LATENCY_MS)

        if self._faults.interrupted():
            await self._faults.delay(latency / 2)
            raise TransmissionError(
                FailureReason.LINK_INTERRUPTED, "卫星链路中断", transport=self.name
            )

        await self._faults.delay(latency)

        if self._faults.no_ack():
            raise TransmissionError(
                FailureReason.NO_ACKNOWLEDGEMENT, "卫星未确认", transport=self.name
            )

        return DeliveryReceipt(
            transport=self.name,
            bytes_sent=len(payload),
            elapsed_ms=latency,
            cost=self.message_cost(len(payload), priority),
            channel="beacon" if priority == Priority.CRITICAL else self._config.system,
            details={"satellites": self._satellites_in_view},
        )
