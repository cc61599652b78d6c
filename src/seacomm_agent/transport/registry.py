"""
链路注册表

维护当前可用的驱动集合：
- 并发建链（各驱动的 connect 互相重叠）
- 生成快照供选择器使用
- 周期性健康检查，失效链路按指数退避重连
"""

import asyncio
import contextlib
from collections.abc import Callable, Iterable
from typing import Any

from loguru import logger

from seacomm_agent.domain.enums import ConnectionState
from seacomm_agent.domain.errors import ConnectionError
from seacomm_agent.domain.models import TransportSnapshot
from seacomm_agent.transport.base import TransportDriver
from seacomm_agent.transport.reconnect import (
    ExponentialBackoff,
    ReconnectConfig,
    ReconnectStats,
)


class TransportRegistry:
    """链路注册表"""

    def __init__(
        self,
        drivers: Iterable[TransportDriver] | None = None,
        reconnect: ReconnectConfig | None = None,
    ):
        self._drivers: dict[str, TransportDriver] = {}
        self._reconnect_config = reconnect or ReconnectConfig()
        self._backoffs: dict[str, ExponentialBackoff] = {}
        self._reconnect_stats: dict[str, ReconnectStats] = {}
        self._reconnect_tasks: dict[str, asyncio.Task] = {}
        self._health_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._running = False
        self._listeners: list[Callable] = []

        for driver in drivers or []:
            self.register(driver)

    # ==================== 注册 ====================

    def register(self, driver: TransportDriver) -> None:
        """注册驱动（同名覆盖）"""
        if driver.name in self._drivers:
            logger.warning(f"链路 {driver.name} 已注册，覆盖旧驱动")
        self._drivers[driver.name] = driver
        driver.on_state_change(self._handle_state_change)
        self._backoffs[driver.name] = ExponentialBackoff.from_config(self._reconnect_config)
        self._reconnect_stats[driver.name] = ReconnectStats()

    def unregister(self, name: str) -> TransportDriver | None:
        task = self._reconnect_tasks.pop(name, None)
        if task and not task.done():
            task.cancel()
        self._backoffs.pop(name, None)
        self._reconnect_stats.pop(name, None)
        return self._drivers.pop(name, None)

    def get(self, name: str) -> TransportDriver | None:
        return self._drivers.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._drivers)

    @property
    def drivers(self) -> list[TransportDriver]:
        return list(self._drivers.values())

    def __len__(self) -> int:
        return len(self._drivers)

    def __contains__(self, name: str) -> bool:
        return name in self._drivers

    # ==================== 快照 ====================

    def snapshots(self) -> list[TransportSnapshot]:
        """所有链路的当前快照"""
        return [driver.status() for driver in self._drivers.values()]

    def usable_snapshots(self) -> list[TransportSnapshot]:
        return [s for s in self.snapshots() if s.usable]

    def largest_reachable_payload(self) -> int | None:
        """
        可达链路中最大的单帧上限

        没有可达链路时退回所有已注册链路的最大值；没有任何链路时返回 None。
        """
        usable = self.usable_snapshots()
        pool = usable or self.snapshots()
        if not pool:
            return None
        return max(s.max_payload_bytes for s in pool)

    # ==================== 生命周期 ====================

    async def connect_all(self) -> dict[str, bool]:
        """
        并发建链

        Returns:
            name -> 是否连接成功
        """
        drivers = self.drivers
        results = await asyncio.gather(
            *(driver.connect() for driver in drivers),
            return_exceptions=True,
        )

        outcome: dict[str, bool] = {}
        for driver, result in zip(drivers, results):
            if isinstance(result, BaseException):
                outcome[driver.name] = False
                if not isinstance(result, ConnectionError):
                    logger.error(f"[{driver.name}] 建链异常: {result}")
                if self._running:
                    self._schedule_reconnect(driver.name, str(result))
            else:
                outcome[driver.name] = bool(result)

        ready = [name for name, ok in outcome.items() if ok]
        logger.info(f"链路建立完成: {len(ready)}/{len(outcome)} 可用 {ready}")
        return outcome

    async def start(self) -> None:
        """建链并启动健康检查循环"""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        await self.connect_all()
        self._health_task = asyncio.create_task(self._health_loop())

    async def stop(self) -> None:
        """停止后台任务并断开所有链路"""
        self._running = False
        self._stop_event.set()

        tasks = list(self._reconnect_tasks.values())
        if self._health_task:
            tasks.append(self._health_task)
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reconnect_tasks.clear()
        self._health_task = None

        for driver in self.drivers:
            try:
                await driver.disconnect()
            except Exception as e:
                logger.error(f"[{driver.name}] 断开异常: {e}")

    # ==================== 健康检查 / 重连 ====================

    async def check_all(self) -> dict[str, bool]:
        """对所有链路执行一次健康检查，失效链路安排重连"""
        result: dict[str, bool] = {}
        for driver in self.drivers:
            healthy = False
            if driver.is_usable:
                try:
                    healthy = await asyncio.wait_for(
                        driver.health_check(),
                        timeout=self._reconnect_config.health_check_timeout,
                    )
                except TimeoutError:
                    logger.warning(f"[{driver.name}] 健康检查超时")
                except Exception as e:
                    logger.error(f"[{driver.name}] 健康检查异常: {e}")
            result[driver.name] = healthy

            if not healthy and driver.state != ConnectionState.CONNECTING:
                self._schedule_reconnect(driver.name, f"state={driver.state.value}")
        return result

    async def reconnect(self, name: str) -> bool:
        """立即尝试重连一条链路"""
        driver = self._drivers.get(name)
        if driver is None:
            return False

        stats = self._reconnect_stats[name]
        stats.total_reconnects += 1
        try:
            if not driver.is_usable:
                await driver.disconnect()
            await driver.connect()
        except ConnectionError as e:
            stats.failed_reconnects += 1
            stats.last_failure_reason = e.message
            return False

        stats.successful_reconnects += 1
        stats.current_attempt = 0
        self._backoffs[name].reset()
        logger.info(f"[{name}] 重连成功")
        return True

    def _schedule_reconnect(self, name: str, reason: str) -> None:
        if not self._running:
            return
        task = self._reconnect_tasks.get(name)
        if task is not None and not task.done():
            return
        logger.debug(f"[{name}] 安排重连: {reason}")
        self._reconnect_tasks[name] = asyncio.create_task(self._reconnect_loop(name))

    async def _reconnect_loop(self, name: str) -> None:
        """单条链路的退避重连循环"""
        backoff = self._backoffs[name]
        stats = self._reconnect_stats[name]
        max_attempts = self._reconnect_config.max_attempts

        while not self._stop_event.is_set() and name in self._drivers:
            if max_attempts > 0 and stats.current_attempt >= max_attempts:
                logger.error(f"[{name}] 达到最大重连次数 ({max_attempts})，停止重连")
                return

            delay = backoff.next_backoff()
            stats.current_backoff = delay
            stats.current_attempt += 1
            logger.info(f"[{name}] 等待 {delay:.2f} 秒后重连 (尝试 {stats.current_attempt})")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                return
            except TimeoutError:
                pass

            if await self.reconnect(name):
                return

    async def _health_loop(self) -> None:
        interval = self._reconnect_config.health_check_interval
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                return
            except TimeoutError:
                pass

            try:
                await self.check_all()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"健康检查循环异常: {e}")

    # ==================== 状态回调 ====================

    def on_state_change(self, callback: Callable) -> None:
        """注册链路状态变更回调 callback(name, old_state, new_state)"""
        self._listeners.append(callback)

    async def _handle_state_change(
        self, name: str, old_state: ConnectionState, new_state: ConnectionState
    ) -> None:
        if new_state == ConnectionState.FAILED:
            logger.warning(f"[{name}] 链路失效 ({old_state.value} -> failed)")
            self._schedule_reconnect(name, "state=failed")
        elif new_state.is_usable and not old_state.is_usable:
            logger.info(f"[{name}] 链路可用: {new_state.value}")

        for callback in self._listeners:
            try:
                result = callback(name, old_state, new_state)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"[{name}] 链路状态回调异常: {e}")

    # ==================== 状态查询 ====================

    def get_status(self) -> dict[str, Any]:
        return {
            name: {
                **driver.get_status(),
                "reconnect": self._reconnect_stats[name].to_dict(),
            }
            for name, driver in self._drivers.items()
        }
