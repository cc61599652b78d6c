"""
健康检查

存活探针只说明进程在跑；就绪探针要求至少一条可用链路且队列未饱和。
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from seacomm_agent.domain.enums import ConnectionState


class HealthStatus(str, Enum):
    """健康状态"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthResult:
    """健康检查结果"""
    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


class HealthChecker:
    """健康检查器"""

    def __init__(self):
        self._checks: dict[str, Callable[[], HealthResult]] = {}
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    def register(self, name: str, check: Callable[[], HealthResult]) -> None:
        """注册健康检查"""
        self._checks[name] = check

    def set_ready(self, ready: bool) -> None:
        """设置就绪状态"""
        self._ready = ready

    def liveness(self) -> HealthResult:
        """存活探针"""
        return HealthResult(
            status=HealthStatus.HEALTHY,
            message="alive",
        )

    def readiness(self) -> HealthResult:
        """
        就绪探针

        任一检查 UNHEALTHY 则整体 UNHEALTHY；否则有 DEGRADED 则整体 DEGRADED。
        """
        if not self._ready:
            return HealthResult(
                status=HealthStatus.UNHEALTHY,
                message="not ready",
            )

        results = {}
        overall = HealthStatus.HEALTHY

        for name, check in self._checks.items():
            try:
                result = check()
                results[name] = {"status": result.status.value, "message": result.message}
                if result.status == HealthStatus.UNHEALTHY:
                    overall = HealthStatus.UNHEALTHY
                elif result.status == HealthStatus.DEGRADED and overall == HealthStatus.HEALTHY:
                    overall = HealthStatus.DEGRADED
            except Exception as e:
                results[name] = {"status": HealthStatus.UNHEALTHY.value, "message": f"error: {e}"}
                overall = HealthStatus.UNHEALTHY

        return HealthResult(
            status=overall,
            message="ready" if overall == HealthStatus.HEALTHY else overall.value,
            details=results,
        )


# ==================== 内置检查 ====================

def transport_check(registry: Any) -> Callable[[], HealthResult]:
    """至少一条链路可用（READY / DEGRADED）"""

    def _check() -> HealthResult:
        snapshots = registry.snapshots()
        usable = [s.name for s in snapshots if s.usable]
        if not usable:
            return HealthResult(HealthStatus.UNHEALTHY, "no usable transport")
        degraded = [s.name for s in snapshots if s.connection_state == ConnectionState.DEGRADED]
        if len(degraded) == len(usable):
            return HealthResult(HealthStatus.DEGRADED, f"degraded: {','.join(degraded)}")
        return HealthResult(HealthStatus.HEALTHY, f"usable: {','.join(usable)}")

    return _check


def queue_check(queue: Any, saturation: float = 0.9) -> Callable[[], HealthResult]:
    """队列未饱和；超过 saturation 降级，满队列不可用"""

    def _check() -> HealthResult:
        size = len(queue)
        capacity = queue.capacity
        if size >= capacity:
            return HealthResult(HealthStatus.UNHEALTHY, f"queue full ({size}/{capacity})")
        if size >= capacity * saturation:
            return HealthResult(HealthStatus.DEGRADED, f"queue saturated ({size}/{capacity})")
        return HealthResult(HealthStatus.HEALTHY, f"{size}/{capacity}")

    return _check
