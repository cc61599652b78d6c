"""
WiFi 驱动

仅在港口附近可用。建链为扫描 + 关联，不在覆盖范围时失败。
"""

from dataclasses import dataclass

from seacomm_agent.domain.enums import FailureReason, Priority, TransportKind
from seacomm_agent.domain.errors import TransmissionError
from seacomm_agent.domain.models import DeliveryReceipt
from seacomm_agent.transport.base import DriverConfig, TransportDriver


@dataclass
class WifiConfig(DriverConfig):
    """WiFi 配置"""

    ssid: str = "harbor"
    in_range: bool = True

    max_payload_bytes: int = 65000
    min_signal_quality: float = 20.0
    typical_latency_ms: float = 50.0


class WifiDriver(TransportDriver):
    """WiFi 驱动"""

    kind = TransportKind.WIFI
    SIGNAL_RANGE = (60.0, 95.0)
    LATENCY_MS = (20.0, 80.0)
    SCAN_MS = 300.0
    ASSOCIATE_MS = 200.0

    @classmethod
    def default_config(cls) -> WifiConfig:
        return WifiConfig()

    def set_in_range(self, in_range: bool) -> None:
        """更新是否处于覆盖范围（离港后置为 False）"""
        self._config.in_range = in_range

    async def _acquire(self) -> None:
        await self._faults.delay(self.SCAN_MS)
        if not self._config.in_range or self._faults.connect_fails():
            raise self._connection_failure("scan", f"未发现 SSID: {self._config.ssid}")

        await self._faults.delay(self.ASSOCIATE_MS)
        if self._faults.connect_fails():
            raise self._connection_failure("associate", f"关联失败: {self._config.ssid}")

        self._update_signal(self._sample_signal())

    async def _probe(self) -> bool:
        return self._config.in_range

    async def _transmit(self, payload: bytes, priority: Priority) -> DeliveryReceipt:
        latency = self._faults.latency(self.LATENCY_MS)

        if not self._config.in_range or self._faults.interrupted():
            await self._faults.delay(latency / 2)
            raise TransmissionError(
                FailureReason.LINK_INTERRUPTED, "WiFi 连接中断", transport=self.name
            )

        await self._faults.delay(latency)

        if self._faults.no_ack():
            raise TransmissionError(
                FailureReason.NO_ACKNOWLEDGEMENT, "服务端未确认", transport=self.name
            )

        return DeliveryReceipt(
            transport=self.name,
            bytes_sent=len(payload),
            elapsed_ms=latency,
            cost=0.0,
            channel=self._config.ssid,
        )
