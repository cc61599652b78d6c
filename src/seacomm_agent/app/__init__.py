"""
应用层

负责组装和启动 Agent 应用。
"""

from seacomm_agent.app.lifecycle import Lifecycle
from seacomm_agent.app.main import Application, GracefulShutdown, run_agent
from seacomm_agent.app.wiring import Container, create_container

__all__ = [
    "Application",
    "GracefulShutdown",
    "Container",
    "Lifecycle",
    "create_container",
    "run_agent",
]
