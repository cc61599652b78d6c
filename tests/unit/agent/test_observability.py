"""
健康检查、指标与 HTTP 服务测试
"""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from conftest import quiet_faults
from seacomm_agent.domain.models import Message
from seacomm_agent.engine.agent import CommunicationAgent
from seacomm_agent.engine.outbox import TransmissionQueue
from seacomm_agent.observability.health import (
    HealthChecker,
    HealthResult,
    HealthStatus,
    queue_check,
    transport_check,
)
from seacomm_agent.observability.metrics import MetricsCollector
from seacomm_agent.observability.server import ObservabilityServer
from seacomm_agent.transport.radio import RadioDriver
from seacomm_agent.transport.registry import TransportRegistry


def fixed(status: HealthStatus):
    return lambda: HealthResult(status, status.value)


async def fill(queue: TransmissionQueue, count: int) -> None:
    for i in range(count):
        await queue.enqueue(Message(id=f"m{i}", payload=b"x", created_at=float(i + 1)))


class TestHealthChecker:
    """健康检查器测试"""

    def test_not_ready(self):
        checker = HealthChecker()
        assert checker.liveness().status == HealthStatus.HEALTHY
        assert checker.readiness().status == HealthStatus.UNHEALTHY

    def test_degraded_aggregation(self):
        checker = HealthChecker()
        checker.register("a", fixed(HealthStatus.HEALTHY))
        checker.register("b", fixed(HealthStatus.DEGRADED))
        checker.set_ready(True)

        result = checker.readiness()

        assert result.status == HealthStatus.DEGRADED
        assert result.details["b"]["status"] == "degraded"

    def test_unhealthy_dominates(self):
        checker = HealthChecker()
        checker.register("a", fixed(HealthStatus.UNHEALTHY))
        checker.register("b", fixed(HealthStatus.DEGRADED))
        checker.set_ready(True)
        assert checker.readiness().status == HealthStatus.UNHEALTHY

    def test_failing_check_is_unhealthy(self):
        def broken():
            raise RuntimeError("sensor offline")

        checker = HealthChecker()
        checker.register("broken", broken)
        checker.set_ready(True)

        result = checker.readiness()
        assert result.status == HealthStatus.UNHEALTHY
        assert "sensor offline" in result.details["broken"]["message"]


class TestBuiltinChecks:
    """内置检查测试"""

    @pytest.mark.asyncio
    async def test_transport_check(self):
        registry = TransportRegistry([RadioDriver(faults=quiet_faults())])
        check = transport_check(registry)

        assert check().status == HealthStatus.UNHEALTHY

        await registry.connect_all()
        assert check().status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_queue_check(self):
        queue = TransmissionQueue(capacity=10)
        check = queue_check(queue)

        assert check().status == HealthStatus.HEALTHY
        await fill(queue, 9)
        assert check().status == HealthStatus.DEGRADED
        await queue.enqueue(Message(id="last", payload=b"x", created_at=100.0))
        assert check().status == HealthStatus.UNHEALTHY


class TestMetricsCollector:
    """指标收集测试"""

    def test_counters_and_gauges(self):
        collector = MetricsCollector()
        collector.inc("reconnects")
        collector.inc("reconnects", 2)
        collector.set("temperature_c", 21.5)

        metrics = collector.get_all()

        assert metrics["reconnects"] == 3
        assert metrics["temperature_c"] == 21.5
        assert "cpu_percent" in metrics
        assert collector.get_agent_metrics() == {}

    @pytest.mark.asyncio
    async def test_prometheus_includes_agent_and_transports(self):
        registry = TransportRegistry([RadioDriver(faults=quiet_faults())])
        await registry.connect_all()
        agent = CommunicationAgent(registry, TransmissionQueue())
        await agent.submit(b"ping")
        await agent.drain_once(wait=True)

        text = MetricsCollector(agent).to_prometheus()

        assert "seacomm_agent_messages_submitted_total 1" in text
        assert "seacomm_agent_messages_sent_total 1" in text
        assert 'seacomm_agent_transport_successes{transport="radio"} 1' in text
        assert 'seacomm_agent_transport_usable{transport="radio"} 1' in text
        assert text.endswith("\n")


class TestObservabilityServer:
    """HTTP 端点测试"""

    @pytest.mark.asyncio
    async def test_endpoints(self):
        registry = TransportRegistry([RadioDriver(faults=quiet_faults())])
        agent = CommunicationAgent(registry, TransmissionQueue())
        server = ObservabilityServer(agent=agent)
        server.register_health_check("transports", transport_check(registry))

        async with TestClient(TestServer(server.create_app())) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            assert (await resp.json())["status"] == "ok"

            resp = await client.get("/health/live")
            assert resp.status == 200

            resp = await client.get("/health/ready")
            assert resp.status == 503

            server.set_ready(True)
            resp = await client.get("/health/ready")
            assert resp.status == 503
            assert (await resp.json())["details"]["transports"]["status"] == "unhealthy"

            await registry.connect_all()
            resp = await client.get("/health/ready")
            assert resp.status == 200

            resp = await client.get("/metrics")
            assert resp.status == 200
            assert "seacomm_agent_uptime_seconds" in await resp.text()

            resp = await client.get("/stats")
            assert resp.status == 200
            assert (await resp.json())["submitted"] == 0

    @pytest.mark.asyncio
    async def test_stats_without_agent(self):
        server = ObservabilityServer()
        async with TestClient(TestServer(server.create_app())) as client:
            resp = await client.get("/stats")
            assert resp.status == 404
