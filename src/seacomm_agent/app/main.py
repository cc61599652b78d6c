"""
应用主入口

负责组装和启动 Agent 应用。
"""

import asyncio
import os
import signal
from typing import Any

from loguru import logger

from seacomm_agent.app.lifecycle import Lifecycle
from seacomm_agent.app.wiring import Container, create_container
from seacomm_agent.config import AgentConfig


class GracefulShutdown:
    """关闭信号处理

    第一次 SIGTERM / SIGINT 触发优雅关闭，并在 grace_period + 5 秒后强制退出；
    第二次信号立即退出。
    """

    def __init__(self, grace_period: float = 10.0):
        self._grace_period = grace_period
        self._signal_count = 0
        self._shutdown_event = asyncio.Event()
        self._force_exit_handle: asyncio.TimerHandle | None = None

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_event.is_set()

    def install_handlers(self) -> None:
        """在运行中的事件循环上安装信号处理器"""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                # Windows 事件循环不支持 add_signal_handler
                signal.signal(
                    sig,
                    lambda signum, _frame: loop.call_soon_threadsafe(
                        self._on_signal, signal.Signals(signum)
                    ),
                )

    def _on_signal(self, sig: signal.Signals) -> None:
        self._signal_count += 1
        if self._signal_count > 1:
            logger.warning(f"收到第二次 {sig.name}，强制退出")
            os._exit(128 + sig.value)

        logger.info(f"收到 {sig.name}，开始优雅关闭... (再次发送信号强制退出)")
        self._shutdown_event.set()
        self._force_exit_handle = asyncio.get_running_loop().call_later(
            self._grace_period + 5, self._force_exit, sig
        )

    def _force_exit(self, sig: signal.Signals) -> None:
        logger.warning("优雅关闭超时，强制退出")
        os._exit(128 + sig.value)

    def cancel_force_exit(self) -> None:
        if self._force_exit_handle:
            self._force_exit_handle.cancel()
            self._force_exit_handle = None

    async def wait(self) -> None:
        """等待关闭信号"""
        await self._shutdown_event.wait()

    def trigger(self) -> None:
        """手动触发关闭"""
        self._shutdown_event.set()


class Application:
    """Agent 应用"""

    def __init__(self, config: AgentConfig):
        self.config = config
        self.container: Container | None = None
        self.lifecycle = Lifecycle()
        self._graceful = GracefulShutdown(grace_period=config.grace_period)

    @property
    def agent(self) -> Any:
        return self.container.agent if self.container else None

    async def setup(self) -> None:
        """初始化应用"""
        logger.info("初始化 Agent 应用...")
        self.container = create_container(self.config)

    async def start(self) -> None:
        """启动所有组件（不等待关闭信号）"""
        if not self.container:
            await self.setup()
        await self.lifecycle.startup(self.container)
        self._log_status()

    async def run(self) -> None:
        """运行应用，直到收到关闭信号"""
        self._graceful.install_handlers()
        await self.start()

        await self._graceful.wait()

        await self._shutdown_with_timeout()

    def request_shutdown(self) -> None:
        self._graceful.trigger()

    async def _shutdown_with_timeout(self) -> None:
        """带超时的关闭流程"""
        grace_period = self.config.grace_period

        try:
            async with asyncio.timeout(grace_period + 5):
                if self.container:
                    await self.lifecycle.shutdown(self.container, grace_period)
        except TimeoutError:
            logger.warning(f"关闭超时 ({grace_period + 5}s)，部分资源可能未正确释放")
        finally:
            self._graceful.cancel_force_exit()

    async def shutdown(self) -> None:
        await self._shutdown_with_timeout()

    def _log_status(self) -> None:
        """输出运行状态"""
        registry = self.container.registry
        usable = [s.name for s in registry.usable_snapshots()] if registry is not None else []
        health_url = (
            f"http://{self.config.health_host}:{self.config.health_port}/health"
            if self.config.health_enabled
            else "-"
        )
        logger.info(
            "Agent 已启动: name={} transports={} usable={} health_url={} max_concurrent={}",
            self.config.name,
            registry.names if registry is not None else [],
            usable,
            health_url,
            self.config.max_concurrent_dispatches,
        )


async def run_agent(config: AgentConfig) -> None:
    """运行 Agent"""
    app = Application(config)
    await app.run()
