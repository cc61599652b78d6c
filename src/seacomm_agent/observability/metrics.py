"""
指标收集

计数器 / 仪表值、psutil 系统与电池指标、Agent 统计，导出为 Prometheus 文本。
"""

import time
from typing import Any

import psutil
from loguru import logger

METRIC_PREFIX = "seacomm_agent"


class MetricsCollector:
    """
    指标收集器

    绑定 Agent 后，每次导出时拉取队列与各链路的统计。
    """

    def __init__(self, agent: Any = None):
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, float] = {}
        self._start_time = time.time()
        self._agent = agent

    def bind_agent(self, agent: Any) -> None:
        self._agent = agent

    def inc(self, name: str, value: int = 1) -> None:
        """增加计数器"""
        self._counters[name] = self._counters.get(name, 0) + value

    def set(self, name: str, value: float) -> None:
        """设置仪表值"""
        self._gauges[name] = value

    def get_system_metrics(self) -> dict[str, Any]:
        """获取系统指标（船载单元通常由电池供电）"""
        metrics: dict[str, Any] = {
            "cpu_percent": psutil.cpu_percent(),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage("/").percent,
        }
        try:
            battery = psutil.sensors_battery()
        except (AttributeError, NotImplementedError, OSError) as e:
            logger.debug(f"电池信息不可用: {e}")
            battery = None
        if battery is not None:
            metrics["battery_percent"] = battery.percent
            metrics["battery_plugged"] = 1 if battery.power_plugged else 0
        return metrics

    def get_agent_metrics(self) -> dict[str, Any]:
        """Agent 计数与队列状态（未绑定时为空）"""
        if self._agent is None:
            return {}

        stats = self._agent.get_stats()
        queue = stats.get("queue", {})
        metrics = {
            "messages_submitted_total": stats.get("submitted", 0),
            "messages_sent_total": stats.get("sent", 0),
            "messages_failed_total": stats.get("failed", 0),
            "retries_scheduled_total": stats.get("retries", 0),
            "broadcasts_total": stats.get("broadcasts", 0),
            "dispatches_inflight": stats.get("inflight", 0),
            "queue_size": queue.get("size", 0),
            "queue_capacity": queue.get("capacity", 0),
            "queue_evicted_total": queue.get("evicted", 0),
            "queue_rejected_total": queue.get("rejected", 0),
        }
        return metrics

    def get_all(self) -> dict[str, Any]:
        """获取所有指标"""
        metrics = {
            "uptime_seconds": time.time() - self._start_time,
            **self._counters,
            **self._gauges,
            **self.get_system_metrics(),
            **self.get_agent_metrics(),
        }
        return metrics

    def to_prometheus(self) -> str:
        """导出 Prometheus 格式"""
        lines = []
        metrics = self.get_all()

        for name, value in metrics.items():
            metric_name = f"{METRIC_PREFIX}_{name}"
            if isinstance(value, (int, float)):
                lines.append(f"{metric_name} {value}")

        lines.extend(self._transport_lines())
        return "\n".join(lines) + "\n"

    def _transport_lines(self) -> list[str]:
        """按链路打标签的统计"""
        if self._agent is None:
            return []

        lines = []
        transports = self._agent.get_stats().get("transports", {})
        for name, stats in transports.items():
            for key in ("attempts", "successes", "failures", "bytes_sent", "total_cost"):
                lines.append(
                    f'{METRIC_PREFIX}_transport_{key}{{transport="{name}"}} {stats.get(key, 0)}'
                )

        for snapshot in self._agent.registry.snapshots():
            usable = 1 if snapshot.usable else 0
            lines.append(f'{METRIC_PREFIX}_transport_usable{{transport="{snapshot.name}"}} {usable}')
            if snapshot.signal_quality is not None:
                lines.append(
                    f'{METRIC_PREFIX}_transport_signal_quality{{transport="{snapshot.name}"}} '
                    f"{snapshot.signal_quality}"
                )
        return lines
