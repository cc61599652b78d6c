"""
通信 Agent 测试
"""

import asyncio
import random

import pytest

from conftest import quiet_faults
from seacomm_agent.domain.enums import (
    DispatchMode,
    MessageStatus,
    Priority,
    TransportKind,
)
from seacomm_agent.domain.errors import CapacityError
from seacomm_agent.domain.models import DeliveryReceipt
from seacomm_agent.engine.agent import CommunicationAgent
from seacomm_agent.engine.outbox import TransmissionQueue
from seacomm_agent.engine.policies import DispatchPolicy, RetryPolicy
from seacomm_agent.engine.store import QueueStore
from seacomm_agent.transport.base import TransportDriver
from seacomm_agent.transport.cellular import CellularDriver
from seacomm_agent.transport.radio import RadioConfig, RadioDriver
from seacomm_agent.transport.registry import TransportRegistry
from seacomm_agent.transport.satellite import SatelliteDriver
from seacomm_agent.transport.wifi import WifiDriver


class GatedDriver(TransportDriver):
    """发送阻塞在 gate 上，直到测试放行"""

    kind = TransportKind.WIFI

    def __init__(self, name: str = "gated", **kwargs):
        super().__init__(name=name, **kwargs)
        self.gate = asyncio.Event()
        self.sent: list[bytes] = []

    async def _acquire(self) -> None:
        return None

    def _sample_signal(self):
        return 80.0

    async def _transmit(self, payload: bytes, priority: Priority) -> DeliveryReceipt:
        await self.gate.wait()
        self.sent.append(payload)
        return DeliveryReceipt(transport=self.name, bytes_sent=len(payload), elapsed_ms=1.0)


def build_agent(
    clock,
    drivers,
    capacity: int = 100,
    max_attempts: int = 3,
    base_delay: float = 5.0,
    queue_dir=None,
    **policy,
) -> CommunicationAgent:
    registry = TransportRegistry(drivers)
    store = QueueStore(queue_dir) if queue_dir is not None else None
    queue = TransmissionQueue(
        capacity=capacity,
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=base_delay),
        store=store,
        clock=clock,
    )
    return CommunicationAgent(
        registry,
        queue,
        policy=DispatchPolicy(**policy),
        clock=clock,
    )


def failing_radio() -> RadioDriver:
    return RadioDriver(
        config=RadioConfig(max_consecutive_failures=100),
        faults=quiet_faults(no_ack_rate=1.0),
    )


def steady_cellular() -> CellularDriver:
    return CellularDriver(faults=quiet_faults(signal_range=(30.0, 30.0)))


async def wait_until(predicate, timeout: float = 2.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


class TestSubmit:
    """提交测试"""

    @pytest.mark.asyncio
    async def test_submit_queues_message(self, clock):
        agent = build_agent(clock, [RadioDriver(faults=quiet_faults())])

        message_id = await agent.submit(b"position 59.91N 10.75E", "HIGH")

        status = agent.status(message_id)
        assert status["status"] == MessageStatus.QUEUED.value
        assert status["priority"] == Priority.HIGH.value
        assert status["attempts"] == 0
        assert status["created_at"] == clock.now

    @pytest.mark.asyncio
    async def test_submit_rejects_non_bytes(self, clock):
        agent = build_agent(clock, [])
        with pytest.raises(TypeError):
            await agent.submit("text")

    @pytest.mark.asyncio
    async def test_submit_estimates_encoding(self, clock):
        radio = RadioDriver(faults=quiet_faults())
        agent = build_agent(clock, [radio])
        await agent.registry.connect_all()

        message_id = await agent.submit(b'{"lat": 59.91, "lon": 10.75}' * 10)

        assert agent.queue.get(message_id).encoding is not None

    @pytest.mark.asyncio
    async def test_oversize_message_still_queued(self, clock):
        agent = build_agent(clock, [RadioDriver(faults=quiet_faults())])
        await agent.registry.connect_all()

        payload = random.Random(3).randbytes(1000)
        message_id = await agent.submit(payload)

        assert agent.queue.get(message_id).encoding is None
        assert agent.get_stats()["oversize_at_submit"] == 1

        await agent.drain_once(wait=True)
        status = agent.status(message_id)
        assert status["status"] == MessageStatus.RETRY_SCHEDULED.value
        assert status["last_error"] == "radio:payload_too_large"

    @pytest.mark.asyncio
    async def test_capacity_error_propagates(self, clock):
        agent = build_agent(clock, [], capacity=1)
        first = await agent.submit(b"a", Priority.NORMAL)

        with pytest.raises(CapacityError):
            await agent.submit(b"b", Priority.NORMAL)

        await agent.submit(b"c", Priority.HIGH)
        status = agent.status(first)
        assert status["status"] == MessageStatus.FAILED.value
        assert status["last_error"] == "evicted"

    @pytest.mark.asyncio
    async def test_unknown_id(self, clock):
        agent = build_agent(clock, [])
        assert agent.status("missing") is None
        assert not await agent.cancel("missing")


class TestDispatch:
    """调度测试"""

    @pytest.mark.asyncio
    async def test_falls_back_to_next_transport(self, clock):
        """无线电无确认时同一轮内改走蜂窝"""
        agent = build_agent(clock, [failing_radio(), steady_cellular()])
        await agent.registry.connect_all()
        message_id = await agent.submit(b"catch report" * 4)

        assert await agent.drain_once(wait=True) == 1

        status = agent.status(message_id)
        assert status["status"] == MessageStatus.SENT.value
        assert status["assigned_transport"] == "cellular"
        assert status["attempts"] == 0
        assert [a["transport"] for a in status["attempt_log"]] == ["radio", "cellular"]
        assert status["attempt_log"][0]["error"] == "no_acknowledgement"

        stats = agent.get_stats()
        assert stats["sent"] == 1
        assert stats["transports"]["radio"]["failures"] == 1
        assert stats["transports"]["cellular"]["successes"] == 1

    @pytest.mark.asyncio
    async def test_wifi_first_then_radio_at_normal(self, clock):
        """港口 WiFi 排在最前，离港后同一轮回退到无线电，弱信号蜂窝排最后"""
        wifi = WifiDriver(faults=quiet_faults())
        cellular = CellularDriver(faults=quiet_faults(signal_range=(20.0, 20.0)))
        radio = RadioDriver(faults=quiet_faults())
        agent = build_agent(clock, [wifi, cellular, radio])
        await agent.registry.connect_all()

        plan = agent.selector.select(agent.registry.snapshots(), Priority.NORMAL)
        assert plan.transports == ["wifi", "radio", "cellular"]

        wifi.set_in_range(False)
        message_id = await agent.submit(b"catch report", Priority.NORMAL)
        await agent.drain_once(wait=True)

        status = agent.status(message_id)
        assert status["status"] == MessageStatus.SENT.value
        assert status["assigned_transport"] == "radio"
        assert [a["transport"] for a in status["attempt_log"]] == ["wifi", "radio"]
        assert status["attempt_log"][0]["error"] == "link_interrupted"
        assert cellular.stats.attempts == 0

    @pytest.mark.asyncio
    async def test_critical_radio_fails_satellite_delivers(self, clock):
        """CRITICAL 广播：无线电失败、卫星成功，各记录一次尝试"""
        agent = build_agent(clock, [failing_radio(), SatelliteDriver(faults=quiet_faults())])
        await agent.registry.connect_all()
        outcomes = []
        agent.on_outcome(outcomes.append)

        message_id = await agent.submit(b"MAYDAY 59.91N 10.75E", Priority.CRITICAL)
        await agent.drain_once(wait=True)

        status = agent.status(message_id)
        assert status["status"] == MessageStatus.SENT.value
        assert status["assigned_transport"] == "satellite"
        assert status["attempts"] == 0
        attempts = {a["transport"]: a for a in status["attempt_log"]}
        assert len(status["attempt_log"]) == 2
        assert not attempts["radio"]["ok"]
        assert attempts["radio"]["error"] == "no_acknowledgement"
        assert attempts["satellite"]["ok"]
        assert outcomes[0].mode == DispatchMode.BROADCAST
        assert outcomes[0].transport == "satellite"

    @pytest.mark.asyncio
    async def test_critical_broadcasts_to_all_usable(self, clock):
        satellite = SatelliteDriver(faults=quiet_faults(no_ack_rate=1.0))
        agent = build_agent(
            clock,
            [RadioDriver(faults=quiet_faults()), steady_cellular(), satellite],
        )
        await agent.registry.connect_all()
        outcomes = []
        agent.on_outcome(outcomes.append)

        message_id = await agent.submit(b"MAYDAY", Priority.CRITICAL)
        await agent.drain_once(wait=True)

        outcome = outcomes[0]
        assert outcome.message_id == message_id
        assert outcome.mode == DispatchMode.BROADCAST
        assert outcome.ok
        assert {a.transport for a in outcome.attempts} == {"radio", "cellular", "satellite"}
        assert outcome.transport in ("radio", "cellular")
        assert agent.status(message_id)["status"] == MessageStatus.SENT.value
        assert agent.get_stats()["broadcasts"] == 1

    @pytest.mark.asyncio
    async def test_broadcast_failure_counts_one_round(self, clock):
        agent = build_agent(clock, [failing_radio()])
        await agent.registry.connect_all()

        message_id = await agent.submit(b"MAYDAY", Priority.CRITICAL)
        await agent.drain_once(wait=True)

        status = agent.status(message_id)
        assert status["status"] == MessageStatus.RETRY_SCHEDULED.value
        assert status["attempts"] == 1

    @pytest.mark.asyncio
    async def test_no_transport_keeps_message_queued(self, clock):
        agent = build_agent(clock, [RadioDriver(faults=quiet_faults())])
        message_id = await agent.submit(b"ping")

        assert await agent.drain_once(wait=True) == 0

        status = agent.status(message_id)
        assert status["status"] == MessageStatus.QUEUED.value
        assert status["attempts"] == 0
        assert agent.get_stats()["no_transport"] == 1

    @pytest.mark.asyncio
    async def test_retries_until_permanent_failure(self, clock):
        agent = build_agent(clock, [failing_radio()], max_attempts=3, base_delay=5.0)
        await agent.registry.connect_all()
        outcomes = []

        async def collect(outcome):
            outcomes.append(outcome)

        agent.on_outcome(collect)
        message_id = await agent.submit(b"ping")

        await agent.drain_once(wait=True)
        assert agent.status(message_id)["next_retry_at"] == clock.now + 5.0

        # 退避未到期
        assert await agent.drain_once(wait=True) == 0

        clock.advance(5.0)
        await agent.drain_once(wait=True)
        assert agent.status(message_id)["next_retry_at"] == clock.now + 10.0

        clock.advance(10.0)
        await agent.drain_once(wait=True)

        assert [o.status for o in outcomes] == [
            MessageStatus.RETRY_SCHEDULED,
            MessageStatus.RETRY_SCHEDULED,
            MessageStatus.FAILED,
        ]
        status = agent.status(message_id)
        assert status["status"] == MessageStatus.FAILED.value
        assert status["attempts"] == 3
        assert status["last_error"] == "radio:no_acknowledgement"
        assert message_id not in agent.queue

        stats = agent.get_stats()
        assert stats["retries"] == 2
        assert stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_callback_error_does_not_break_dispatch(self, clock):
        agent = build_agent(clock, [steady_cellular()])
        await agent.registry.connect_all()

        def broken(outcome):
            raise RuntimeError("boom")

        agent.on_outcome(broken)
        message_id = await agent.submit(b"ping")
        await agent.drain_once(wait=True)

        assert agent.status(message_id)["status"] == MessageStatus.SENT.value


class TestConcurrency:
    """并发与单飞测试"""

    @pytest.mark.asyncio
    async def test_single_flight_per_message(self, clock):
        driver = GatedDriver(faults=quiet_faults())
        agent = build_agent(clock, [driver])
        await agent.registry.connect_all()
        message_id = await agent.submit(b"ping")

        assert await agent.drain_once() == 1
        assert await agent.drain_once() == 0
        assert await wait_until(
            lambda: agent.status(message_id)["status"] == MessageStatus.TRANSMITTING.value
        )
        assert agent.status(message_id)["assigned_transport"] == "gated"
        assert not await agent.cancel(message_id)

        driver.gate.set()
        assert await wait_until(lambda: agent.inflight_count == 0)
        assert agent.status(message_id)["status"] == MessageStatus.SENT.value
        assert len(driver.sent) == 1

    @pytest.mark.asyncio
    async def test_critical_bypasses_concurrency_limit(self, clock):
        driver = GatedDriver(faults=quiet_faults())
        agent = build_agent(clock, [driver], max_concurrent_dispatches=1)
        await agent.registry.connect_all()

        await agent.submit(b"a")
        second = await agent.submit(b"b")
        assert await agent.drain_once() == 1

        await agent.submit(b"MAYDAY", Priority.CRITICAL)
        assert await agent.drain_once() == 1
        assert agent.inflight_count == 2
        assert agent.status(second)["status"] == MessageStatus.QUEUED.value

        driver.gate.set()
        assert await wait_until(lambda: agent.inflight_count == 0)
        assert await agent.drain_once(wait=True) == 1
        assert len(agent.queue) == 0

    @pytest.mark.asyncio
    async def test_cancel_queued_message(self, clock):
        agent = build_agent(clock, [])
        message_id = await agent.submit(b"ping")

        assert await agent.cancel(message_id)
        assert agent.status(message_id)["status"] == MessageStatus.CANCELLED.value


class TestLifecycle:
    """启动 / 停止测试"""

    @pytest.mark.asyncio
    async def test_drain_loop_sends_submitted_messages(self, clock, queue_dir):
        agent = build_agent(clock, [steady_cellular()], queue_dir=queue_dir, drain_interval=0.05)
        await agent.registry.connect_all()
        await agent.start()
        try:
            assert agent.is_running
            message_id = await agent.submit(b"ping")
            assert await wait_until(
                lambda: agent.status(message_id)["status"] == MessageStatus.SENT.value
            )
        finally:
            await agent.stop()

        assert not agent.is_running

        # 重启后终态仍可查询
        queue = TransmissionQueue(store=QueueStore(queue_dir))
        await queue.load()
        assert queue.status_of(message_id)["status"] == MessageStatus.SENT.value

    @pytest.mark.asyncio
    async def test_stop_releases_inflight_message(self, clock, queue_dir):
        driver = GatedDriver(faults=quiet_faults())
        agent = build_agent(clock, [driver], queue_dir=queue_dir, drain_interval=0.05)
        await agent.registry.connect_all()
        await agent.start()

        message_id = await agent.submit(b"ping")
        assert await wait_until(lambda: agent.inflight_count == 1)

        await agent.stop(grace_period=0.05)

        assert agent.inflight_count == 0
        assert agent.queue.get(message_id).status == MessageStatus.QUEUED
        assert agent.queue.get(message_id).attempts == 0

    @pytest.mark.asyncio
    async def test_start_restores_persisted_queue(self, clock, queue_dir):
        first = build_agent(clock, [], queue_dir=queue_dir)
        message_id = await first.submit(b"ping", Priority.LOW)

        second = build_agent(clock, [], queue_dir=queue_dir, drain_interval=0.05)
        await second.start()
        try:
            assert second.status(message_id)["status"] == MessageStatus.QUEUED.value
        finally:
            await second.stop()
