"""
可观测性模块
"""

from seacomm_agent.observability.health import (
    HealthChecker,
    HealthResult,
    HealthStatus,
    queue_check,
    transport_check,
)
from seacomm_agent.observability.metrics import MetricsCollector
from seacomm_agent.observability.server import ObservabilityServer

__all__ = [
    "HealthChecker",
    "HealthResult",
    "HealthStatus",
    "transport_check",
    "queue_check",
    "MetricsCollector",
    "ObservabilityServer",
]
