"""
应用组装与生命周期测试
"""

import asyncio
import os
import signal

import pytest

from seacomm_agent.app.lifecycle import Lifecycle
from seacomm_agent.app.main import Application, GracefulShutdown
from seacomm_agent.app.wiring import create_container
from seacomm_agent.config import AgentConfig
from seacomm_agent.domain.enums import MessageStatus, Priority
from seacomm_agent.observability.health import HealthStatus


def app_config(tmp_path, **overrides) -> AgentConfig:
    values = {
        "data_dir": str(tmp_path),
        "time_scale": 0.0,
        "drain_interval": 0.05,
        "health_enabled": False,
        "grace_period": 1.0,
        "transports": {
            "radio": {"enabled": False},
            "cellular": {"enabled": True, "faults": {"signal_range": [30, 30], "seed": 1}},
            "satellite": {"enabled": False},
        },
    }
    values.update(overrides)
    return AgentConfig(**values)


class TestContainer:
    """依赖容器测试"""

    def test_create_container(self, tmp_path):
        config = app_config(tmp_path, queue_capacity=5, max_attempts=2)
        container = create_container(config)

        assert container.is_initialized()
        assert container.registry.names == ["cellular"]
        assert container.queue.capacity == 5
        assert container.queue.retry_policy.max_attempts == 2
        assert container.agent.queue is container.queue
        assert container.observability_server is None
        assert container.get("registry") is container.registry

    def test_observability_server_when_enabled(self, tmp_path):
        container = create_container(app_config(tmp_path, health_enabled=True))
        assert container.observability_server is not None


class TestLifecycle:
    """生命周期测试"""

    @pytest.mark.asyncio
    async def test_startup_and_shutdown_order(self, tmp_path):
        container = create_container(app_config(tmp_path))
        lifecycle = Lifecycle()
        events = []
        lifecycle.on_startup(lambda: events.append("startup"))

        async def first():
            events.append("first")

        lifecycle.on_shutdown(first)
        lifecycle.on_shutdown(lambda: events.append("second"))

        await lifecycle.startup(container)
        assert lifecycle.is_running
        assert container.agent.is_running
        assert container.health_checker.readiness().status == HealthStatus.HEALTHY

        await lifecycle.shutdown(container)
        await lifecycle.wait_for_shutdown()

        assert events == ["startup", "second", "first"]
        assert not container.agent.is_running
        assert container.health_checker.readiness().status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_failed_startup_shuts_down(self, tmp_path):
        container = create_container(app_config(tmp_path))
        lifecycle = Lifecycle()

        def broken():
            raise RuntimeError("hook failed")

        lifecycle.on_startup(broken)

        with pytest.raises(RuntimeError):
            await lifecycle.startup(container)

        assert not lifecycle.is_running
        assert not container.agent.is_running


class TestApplication:
    """Application 测试"""

    @pytest.mark.asyncio
    async def test_submit_through_application(self, tmp_path):
        app = Application(app_config(tmp_path))
        await app.start()
        try:
            message_id = await app.agent.submit(b"haul=420kg", Priority.NORMAL)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 2.0
            while loop.time() < deadline:
                if app.agent.status(message_id)["status"] == MessageStatus.SENT.value:
                    break
                await asyncio.sleep(0.01)
            assert app.agent.status(message_id)["status"] == MessageStatus.SENT.value
        finally:
            await app.shutdown()

        assert not app.lifecycle.is_running

    @pytest.mark.asyncio
    async def test_graceful_shutdown_trigger(self):
        graceful = GracefulShutdown(grace_period=1.0)
        assert not graceful.is_shutting_down

        graceful.trigger()
        await asyncio.wait_for(graceful.wait(), timeout=1.0)

        assert graceful.is_shutting_down

    @pytest.mark.asyncio
    async def test_sigterm_starts_shutdown(self):
        """SIGTERM 触发关闭并启动强制退出计时"""
        graceful = GracefulShutdown(grace_period=30.0)
        graceful.install_handlers()
        loop = asyncio.get_running_loop()
        try:
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.wait_for(graceful.wait(), timeout=1.0)

            assert graceful.is_shutting_down
            assert graceful._force_exit_handle is not None
            graceful.cancel_force_exit()
            assert graceful._force_exit_handle is None
        finally:
            loop.remove_signal_handler(signal.SIGTERM)
            loop.remove_signal_handler(signal.SIGINT)
