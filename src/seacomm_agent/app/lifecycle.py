"""
生命周期管理

负责 Agent 的启动和关闭流程。
"""

import asyncio
from collections.abc import Callable
from typing import Any

from loguru import logger


class Lifecycle:
    """
    生命周期管理器

    管理 Agent 组件的启动和关闭顺序。
    """

    def __init__(self):
        self._startup_hooks: list[Callable] = []
        self._shutdown_hooks: list[Callable] = []
        self._running = False
        self._shutdown_event: asyncio.Event | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def on_startup(self, hook: Callable) -> None:
        """注册启动钩子"""
        self._startup_hooks.append(hook)

    def on_shutdown(self, hook: Callable) -> None:
        """注册关闭钩子（后注册先执行）"""
        self._shutdown_hooks.insert(0, hook)

    async def startup(self, container: Any) -> None:
        """
        执行启动流程

        启动顺序：
        1. 链路注册表（建链 + 健康检查循环）
        2. Agent（恢复队列 + 排空循环）
        3. 可观测性服务器
        4. 自定义钩子
        """
        logger.info("开始启动 Agent...")
        self._shutdown_event = asyncio.Event()
        self._running = True

        try:
            if container.registry is not None:
                await container.registry.start()
                usable = [s.name for s in container.registry.usable_snapshots()]
                if usable:
                    logger.info(f"链路注册表已启动，可用链路: {usable}")
                else:
                    logger.warning("当前没有可用链路，消息将保持排队，后台自动重连")

            if container.agent:
                await container.agent.start()

            if container.observability_server:
                host = getattr(container.config, "health_host", "127.0.0.1")
                port = getattr(container.config, "health_port", 8101)
                await container.observability_server.start(host=host, port=port)

            if container.health_checker:
                container.health_checker.set_ready(True)

            for hook in self._startup_hooks:
                result = hook()
                if asyncio.iscoroutine(result):
                    await result

            logger.info("Agent 启动完成")

        except Exception as e:
            logger.error(f"启动失败: {e}")
            await self.shutdown(container)
            raise

    async def shutdown(self, container: Any, grace_period: float | None = None) -> None:
        """
        执行关闭流程

        关闭顺序（与启动相反）：
        1. 自定义钩子
        2. 可观测性服务器
        3. Agent（等待在途调度，超时后取消并恢复为可调度）
        4. 链路注册表（断开所有链路）
        """
        if not self._running:
            return

        logger.info("开始关闭 Agent...")
        self._running = False

        try:
            for hook in self._shutdown_hooks:
                try:
                    result = hook()
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.warning(f"关闭钩子执行失败: {e}")

            if container.health_checker:
                container.health_checker.set_ready(False)

            if container.observability_server:
                await container.observability_server.stop()

            if container.agent:
                await container.agent.stop(grace_period=grace_period)

            if container.registry is not None:
                await container.registry.stop()
                logger.info("链路已全部断开")

            logger.info("Agent 已关闭")

        except Exception as e:
            logger.error(f"关闭过程异常: {e}")
        finally:
            if self._shutdown_event:
                self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        """等待关闭完成"""
        if self._shutdown_event:
            await self._shutdown_event.wait()
