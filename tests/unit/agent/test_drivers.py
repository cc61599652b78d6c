"""
链路驱动测试
"""

import asyncio

import pytest

from conftest import quiet_faults
from seacomm_agent.domain.enums import ConnectionState, FailureReason, Priority
from seacomm_agent.domain.errors import ConfigError, ConnectionError, TransmissionError
from seacomm_agent.domain.models import DeliveryReceipt
from seacomm_agent.transport.base import DriverConfig, TransportDriver
from seacomm_agent.transport.cellular import CellularConfig, CellularDriver, signal_label
from seacomm_agent.transport.faults import FaultModel
from seacomm_agent.transport.radio import RadioConfig, RadioDriver, lora_air_time_ms, rssi_to_signal
from seacomm_agent.transport.satellite import SatelliteConfig, SatelliteDriver
from seacomm_agent.transport.wifi import WifiConfig, WifiDriver
from seacomm_agent.domain.enums import TransportKind


class SlowDriver(TransportDriver):
    """发送耗时可控的测试驱动"""

    kind = TransportKind.WIFI

    def __init__(self, hold: float = 0.0, **kwargs):
        super().__init__(**kwargs)
        self.hold = hold
        self.active = 0
        self.max_active = 0
        self.acquired = 0

    async def _acquire(self) -> None:
        self.acquired += 1
        await asyncio.sleep(0)

    def _sample_signal(self):
        return 80.0

    async def _transmit(self, payload: bytes, priority: Priority) -> DeliveryReceipt:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.hold)
        finally:
            self.active -= 1
        return DeliveryReceipt(transport=self.name, bytes_sent=len(payload), elapsed_ms=self.hold * 1000)


class TestFaultModel:
    """故障模型测试"""

    def test_rates_validated(self):
        with pytest.raises(ValueError):
            FaultModel(no_ack_rate=1.5)

    def test_seeded_model_reproducible(self):
        a = FaultModel(seed=3, no_ack_rate=0.5)
        b = FaultModel(seed=3, no_ack_rate=0.5)
        assert [a.no_ack() for _ in range(20)] == [b.no_ack() for _ in range(20)]

    def test_from_dict_uses_default_time_scale(self):
        model = FaultModel.from_dict({"no_ack_rate": 0.1, "latency_ms": [1, 2]}, time_scale=0.0)
        assert model.time_scale == 0.0
        assert model.latency_ms == (1.0, 2.0)


class TestConnect:
    """建链测试"""

    @pytest.mark.asyncio
    async def test_connect_idempotent(self):
        driver = SlowDriver(faults=quiet_faults())

        assert await driver.connect()
        assert await driver.connect()

        assert driver.acquired == 1
        assert driver.state == ConnectionState.READY

    @pytest.mark.asyncio
    async def test_concurrent_connect_acquires_once(self):
        driver = SlowDriver(faults=quiet_faults())
        await asyncio.gather(driver.connect(), driver.connect(), driver.connect())
        assert driver.acquired == 1

    @pytest.mark.asyncio
    async def test_connect_failure_sets_failed(self):
        driver = RadioDriver(faults=quiet_faults(connect_failure_rate=1.0))

        with pytest.raises(ConnectionError) as exc_info:
            await driver.connect()

        assert exc_info.value.stage == "handshake"
        assert exc_info.value.transport == "radio"
        assert driver.state == ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_state_change_callback(self):
        changes = []
        driver = SlowDriver(faults=quiet_faults())
        driver.on_state_change(lambda name, old, new: changes.append((old, new)))

        await driver.connect()
        await driver.disconnect()

        assert changes == [
            (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
            (ConnectionState.CONNECTING, ConnectionState.READY),
            (ConnectionState.READY, ConnectionState.DISCONNECTED),
        ]


class TestSend:
    """发送测试"""

    @pytest.mark.asyncio
    async def test_send_when_disconnected(self):
        driver = SlowDriver(faults=quiet_faults())
        with pytest.raises(TransmissionError) as exc_info:
            await driver.send(b"x")
        assert exc_info.value.reason == FailureReason.LINK_INTERRUPTED

    @pytest.mark.asyncio
    async def test_payload_too_large(self):
        driver = SlowDriver(config=DriverConfig(max_payload_bytes=8), faults=quiet_faults())
        await driver.connect()

        with pytest.raises(TransmissionError) as exc_info:
            await driver.send(b"x" * 9)

        assert exc_info.value.reason == FailureReason.PAYLOAD_TOO_LARGE
        assert driver.stats.attempts == 0

    @pytest.mark.asyncio
    async def test_insufficient_signal(self):
        config = CellularConfig(min_signal_quality=15.0)
        driver = CellularDriver(config=config, faults=quiet_faults(signal_range=(20.0, 20.0)))
        await driver.connect()
        driver.faults.signal_range = (5.0, 5.0)

        with pytest.raises(TransmissionError) as exc_info:
            await driver.send(b"hello")

        assert exc_info.value.reason == FailureReason.INSUFFICIENT_SIGNAL

    @pytest.mark.asyncio
    async def test_timeout_is_link_interrupted(self):
        driver = SlowDriver(hold=1.0, faults=quiet_faults())
        await driver.connect()

        with pytest.raises(TransmissionError) as exc_info:
            await driver.send(b"x", timeout=0.01)

        assert exc_info.value.reason == FailureReason.LINK_INTERRUPTED
        assert driver.stats.failures == 1

    @pytest.mark.asyncio
    async def test_sends_are_serialized(self):
        """同一驱动上的发送互斥"""
        driver = SlowDriver(hold=0.01, faults=quiet_faults())
        await driver.connect()

        await asyncio.gather(*(driver.send(b"x") for _ in range(4)))

        assert driver.max_active == 1
        assert driver.stats.successes == 4

    @pytest.mark.asyncio
    async def test_timeout_covers_waiting_for_busy_link(self):
        """超时覆盖等锁时间：占用方未结束时在自身超时内返回"""
        driver = SlowDriver(hold=1.0, faults=quiet_faults())
        await driver.connect()
        holder = asyncio.create_task(driver.send(b"long"))
        await asyncio.sleep(0.01)
        assert driver.active == 1

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(TransmissionError) as exc_info:
            await driver.send(b"urgent", timeout=0.05, priority=Priority.CRITICAL)
        waited = loop.time() - started

        assert exc_info.value.reason == FailureReason.LINK_INTERRUPTED
        assert waited < 0.5
        # 等锁超时不算链路失败
        assert driver.stats.failures == 0
        assert driver.state == ConnectionState.READY

        holder.cancel()
        with pytest.raises(asyncio.CancelledError):
            await holder

    @pytest.mark.asyncio
    async def test_deadline_shared_between_wait_and_transmit(self):
        """等锁消耗的时间从发送预算中扣除"""
        driver = SlowDriver(hold=0.2, faults=quiet_faults())
        await driver.connect()
        holder = asyncio.create_task(driver.send(b"first"))
        await asyncio.sleep(0.01)

        # 等待约 0.19s 后剩余预算不足以完成 0.2s 的发送
        with pytest.raises(TransmissionError) as exc_info:
            await driver.send(b"second", timeout=0.3)

        assert exc_info.value.reason == FailureReason.LINK_INTERRUPTED
        assert driver.stats.failures == 1
        await holder
        assert driver.stats.successes == 1

    @pytest.mark.asyncio
    async def test_consecutive_link_failures_mark_failed(self):
        driver = RadioDriver(
            config=RadioConfig(max_consecutive_failures=2),
            faults=quiet_faults(no_ack_rate=1.0),
        )
        await driver.connect()

        for _ in range(2):
            with pytest.raises(TransmissionError):
                await driver.send(b"ping")

        assert driver.state == ConnectionState.FAILED
        assert not driver.status().usable

    @pytest.mark.asyncio
    async def test_failures_lower_success_rate(self):
        driver = RadioDriver(
            config=RadioConfig(max_consecutive_failures=10),
            faults=quiet_faults(no_ack_rate=1.0),
        )
        await driver.connect()
        for _ in range(4):
            with pytest.raises(TransmissionError):
                await driver.send(b"ping")

        snapshot = driver.status()
        assert snapshot.success_rate < 0.5
        assert snapshot.connection_state == ConnectionState.DEGRADED


class TestRadio:
    """LoRa 测试"""

    def test_air_time_grows_with_spreading_factor(self):
        assert lora_air_time_ms(20, spreading_factor=12) > lora_air_time_ms(20, spreading_factor=7)

    def test_air_time_known_value(self):
        """SF7 / 125kHz / 4/5，20 字节约 56.6ms"""
        assert lora_air_time_ms(20) == pytest.approx(56.576, abs=0.01)

    def test_rssi_mapping(self):
        assert rssi_to_signal(-120) == 0
        assert rssi_to_signal(-30) == 100
        assert rssi_to_signal(-75) == pytest.approx(50)

    def test_invalid_spreading_factor(self):
        with pytest.raises(ConfigError):
            RadioConfig(spreading_factor=13)

    def test_at_commands(self):
        commands = RadioDriver(config=RadioConfig(spreading_factor=9)).at_commands()
        assert "AT+SF=9" in commands
        assert commands[0] == "AT+FREQ=868000000"

    @pytest.mark.asyncio
    async def test_send_reports_air_time(self):
        driver = RadioDriver(faults=quiet_faults())
        await driver.connect()

        receipt = await driver.send(b"x" * 20)

        assert receipt.cost == 0
        assert receipt.elapsed_ms == pytest.approx(driver.air_time_ms(20))
        assert driver.last_rssi is not None


class TestCellular:
    """蜂窝测试"""

    @pytest.mark.asyncio
    async def test_sms_and_data_channels(self):
        driver = CellularDriver(faults=quiet_faults(signal_range=(30.0, 30.0)))
        await driver.connect()

        sms = await driver.send(b"x" * 100)
        data = await driver.send(b"x" * 500)

        assert sms.channel == "sms"
        assert sms.cost == pytest.approx(0.05)
        assert data.channel == "data"
        assert data.cost == pytest.approx(500 * 0.0001)

    def test_sms_only_limits_payload(self):
        driver = CellularDriver(config=CellularConfig(sms_only=True))
        assert driver.max_payload_bytes == 160

    @pytest.mark.asyncio
    async def test_missing_sim(self):
        driver = CellularDriver(config=CellularConfig(sim_present=False), faults=quiet_faults())
        with pytest.raises(ConnectionError) as exc_info:
            await driver.connect()
        assert exc_info.value.stage == "sim_check"

    @pytest.mark.parametrize(
        ("signal", "label"),
        [(None, "unknown"), (30, "excellent"), (22, "good"), (16, "fair"), (5, "poor")],
    )
    def test_signal_label(self, signal, label):
        assert signal_label(signal) == label


class TestSatellite:
    """卫星测试"""

    def test_message_cost(self):
        driver = SatelliteDriver()
        assert driver.message_cost(1024) == pytest.approx(0.15 + 0.05)
        assert driver.message_cost(1024, Priority.CRITICAL) == 0.0

    def test_base_cost_for_other_system(self):
        driver = SatelliteDriver(config=SatelliteConfig(system="inmarsat"))
        assert driver.base_cost == 0.10

    @pytest.mark.asyncio
    async def test_critical_sent_as_free_beacon(self):
        driver = SatelliteDriver(faults=quiet_faults())
        await driver.connect()

        receipt = await driver.send(b"MAYDAY", priority=Priority.CRITICAL)

        assert receipt.channel == "beacon"
        assert receipt.cost == 0.0
        assert 1 <= driver.satellites_in_view <= 3

    @pytest.mark.asyncio
    async def test_reset_connection(self):
        driver = SatelliteDriver(faults=quiet_faults())
        await driver.connect()
        assert await driver.reset_connection()
        assert driver.state.is_usable


class TestWifi:
    """WiFi 测试"""

    @pytest.mark.asyncio
    async def test_out_of_range_cannot_connect(self):
        driver = WifiDriver(config=WifiConfig(in_range=False), faults=quiet_faults())
        with pytest.raises(ConnectionError):
            await driver.connect()

    @pytest.mark.asyncio
    async def test_leaving_harbor_fails_health_check(self):
        driver = WifiDriver(
            config=WifiConfig(max_consecutive_failures=1), faults=quiet_faults()
        )
        await driver.connect()
        driver.set_in_range(False)

        assert not await driver.health_check()
        assert driver.state == ConnectionState.FAILED
