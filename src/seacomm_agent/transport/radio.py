"""
LoRa 无线电驱动

短距离、免费、低速。建链为模块握手 + 一组 AT 配置命令，
发送时延按 LoRa 空口时间（air time）计算。
"""

import math
from dataclasses import dataclass

from loguru import logger

from seacomm_agent.domain.enums import FailureReason, Priority, TransportKind
from seacomm_agent.domain.errors import ConfigError, TransmissionError
from seacomm_agent.domain.models import DeliveryReceipt
from seacomm_agent.transport.base import DriverConfig, TransportDriver

VALID_BANDWIDTHS = (125e3, 250e3, 500e3)

# RSSI 映射区间（dBm）
RSSI_FLOOR = -120.0
RSSI_CEIL = -30.0


@dataclass
class RadioConfig(DriverConfig):
    """LoRa 配置"""

    frequency_hz: float = 868e6
    bandwidth_hz: float = 125e3
    spreading_factor: int = 7                # SF7-SF12
    coding_rate: int = 5                     # 4/5 - 4/8，取分母
    tx_power_dbm: int = 14
    preamble_symbols: int = 8
    rssi_range: tuple[float, float] = (-100.0, -70.0)

    max_payload_bytes: int = 222
    min_signal_quality: float = 10.0
    cost_per_byte: float = 0.0
    typical_latency_ms: float = 400.0

    def __post_init__(self):
        if not 7 <= self.spreading_factor <= 12:
            raise ConfigError(
                f"spreading_factor 必须在 7-12 之间: {self.spreading_factor}",
                config_key="spreading_factor",
            )
        if not 5 <= self.coding_rate <= 8:
            raise ConfigError(
                f"coding_rate 必须在 5-8 之间: {self.coding_rate}",
                config_key="coding_rate",
            )
        if self.bandwidth_hz not in VALID_BANDWIDTHS:
            raise ConfigError(
                f"bandwidth_hz 不支持: {self.bandwidth_hz}",
                config_key="bandwidth_hz",
            )
        self.rssi_range = (float(self.rssi_range[0]), float(self.rssi_range[1]))


def lora_air_time_ms(
    payload_len: int,
    spreading_factor: int = 7,
    bandwidth_hz: float = 125e3,
    coding_rate: int = 5,
    preamble_symbols: int = 8,
    explicit_header: bool = True,
    crc: bool = True,
) -> float:
    """
    计算 LoRa 帧空口时间（毫秒）

    Args:
        payload_len: 负载字节数
        spreading_factor: 扩频因子
        bandwidth_hz: 带宽
        coding_rate: 编码率分母（5 表示 4/5）
        preamble_symbols: 前导码符号数

    Returns:
        空口时间（毫秒）
    """
    t_sym = (2 ** spreading_factor) / bandwidth_hz * 1000
    low_dr_optimize = 1 if t_sym > 16 else 0
    header = 0 if explicit_header else 1

    numerator = 8 * payload_len - 4 * spreading_factor + 28 + 16 * int(crc) - 20 * header
    denominator = 4 * (spreading_factor - 2 * low_dr_optimize)
    payload_symbols = 8 + max(math.ceil(numerator / denominator) * coding_rate, 0)

    return (preamble_symbols + 4.25 + payload_symbols) * t_sym


def rssi_to_signal(rssi: float) -> float:
    """RSSI（dBm）映射为 0-100 的信号质量"""
    ratio = (rssi - RSSI_FLOOR) / (RSSI_CEIL - RSSI_FLOOR)
    return max(0.0, min(100.0, ratio * 100.0))


class RadioDriver(TransportDriver):
    """LoRa 无线电驱动"""

    kind = TransportKind.RADIO
    HANDSHAKE_MS = 50.0
    COMMAND_MS = 20.0

    def __init__(self, name=None, config: RadioConfig | None = None, faults=None):
        super().__init__(name, config, faults)
        self._last_rssi: float | None = None

    @classmethod
    def default_config(cls) -> RadioConfig:
        return RadioConfig()

    @property
    def last_rssi(self) -> float | None:
        return self._last_rssi

    def at_commands(self) -> list[str]:
        """建链时下发的 AT 配置命令"""
        cfg = self._config
        return [
            f"AT+FREQ={int(cfg.frequency_hz)}",
            f"AT+BW={int(cfg.bandwidth_hz / 1000)}",
            f"AT+SF={cfg.spreading_factor}",
            f"AT+CR=4/{cfg.coding_rate}",
            f"AT+PWR={cfg.tx_power_dbm}",
        ]

    def air_time_ms(self, payload_len: int) -> float:
        cfg = self._config
        return lora_air_time_ms(
            payload_len,
            spreading_factor=cfg.spreading_factor,
            bandwidth_hz=cfg.bandwidth_hz,
            coding_rate=cfg.coding_rate,
            preamble_symbols=cfg.preamble_symbols,
        )

    async def _acquire(self) -> None:
        await self._faults.delay(self.HANDSHAKE_MS)
        if self._faults.connect_fails():
            raise self._connection_failure("handshake", "LoRa 模块握手无响应")

        for command in self.at_commands():
            await self._faults.delay(self.COMMAND_MS)
            if self._faults.connect_fails():
                raise self._connection_failure("configure", f"AT 命令失败: {command}")
            logger.debug(f"[{self.name}] {command} -> OK")

        self._update_signal(self._sample_signal())

    async def _transmit(self, payload: bytes, priority: Priority) -> DeliveryReceipt:
        air_time = self.air_time_ms(len(payload))
        latency = self._faults.latency((air_time, air_time))

        if self._faults.interrupted():
            await self._faults.delay(latency / 2)
            raise TransmissionError(
                FailureReason.LINK_INTERRUPTED, "LoRa 发送中断", transport=self.name
            )

        await self._faults.delay(latency)

        if self._faults.no_ack():
            raise TransmissionError(
                FailureReason.NO_ACKNOWLEDGEMENT, "LoRa 未收到确认", transport=self.name
            )

        return DeliveryReceipt(
            transport=self.name,
            bytes_sent=len(payload),
            elapsed_ms=latency,
            cost=0.0,
            channel="lora",
            details={
                "air_time_ms": round(air_time, 2),
                "rssi": self._last_rssi,
                "spreading_factor": self._config.spreading_factor,
            },
        )

    def _sample_signal(self) -> float | None:
        if self._faults.signal_range is not None:
            return super()._sample_signal()
        low, high = self._config.rssi_range
        self._last_rssi = self._faults.uniform(low, high)
        return rssi_to_signal(self._last_rssi)
