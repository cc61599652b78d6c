"""
依赖注入容器

负责组装 Agent 的所有组件。
"""

from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from seacomm_agent.compression.pipeline import CompressionPipeline
from seacomm_agent.config import AgentConfig
from seacomm_agent.engine.agent import CommunicationAgent
from seacomm_agent.engine.outbox import TransmissionQueue
from seacomm_agent.engine.policies import DispatchPolicy, RetryPolicy
from seacomm_agent.engine.selector import ProtocolSelector
from seacomm_agent.engine.store import QueueStore
from seacomm_agent.observability.health import HealthChecker, queue_check, transport_check
from seacomm_agent.observability.metrics import MetricsCollector
from seacomm_agent.observability.server import ObservabilityServer
from seacomm_agent.transport.factory import create_registry


@dataclass
class Container:
    """
    依赖注入容器

    管理 Agent 所有组件的生命周期和依赖关系。
    """

    # 配置
    config: Any = None

    # 核心组件
    registry: Any = None
    store: Any = None
    queue: Any = None
    pipeline: Any = None
    selector: Any = None
    agent: Any = None

    # 可观测性
    health_checker: Any = None
    metrics_collector: Any = None
    observability_server: Any = None

    # 状态
    _initialized: bool = False
    _components: dict[str, Any] = field(default_factory=dict)

    def register(self, name: str, component: Any) -> None:
        """注册组件"""
        self._components[name] = component
        setattr(self, name, component)
        logger.debug(f"组件已注册: {name}")

    def get(self, name: str) -> Any | None:
        """获取组件"""
        if name in self._components:
            return self._components[name]
        return getattr(self, name, None)

    def is_initialized(self) -> bool:
        """是否已初始化"""
        return self._initialized

    def mark_initialized(self) -> None:
        """标记为已初始化"""
        self._initialized = True


def create_container(config: AgentConfig) -> Container:
    """
    创建并配置依赖容器

    Args:
        config: Agent 配置

    Returns:
        配置好的容器
    """
    container = Container(config=config)
    config.ensure_directories()

    # 1. 链路注册表
    registry = create_registry(config)
    container.register("registry", registry)

    # 2. 队列与持久化
    store = QueueStore(config.queue_dir)
    container.register("store", store)
    queue = TransmissionQueue(
        capacity=config.queue_capacity,
        retry_policy=RetryPolicy(
            max_attempts=config.max_attempts,
            base_delay=config.retry_base_delay,
        ),
        store=store,
    )
    container.register("queue", queue)

    # 3. 压缩与选择
    pipeline = CompressionPipeline(max_time_ms=config.compression_max_time_ms)
    container.register("pipeline", pipeline)
    selector = ProtocolSelector()
    container.register("selector", selector)

    # 4. Agent
    agent = CommunicationAgent(
        registry=registry,
        queue=queue,
        pipeline=pipeline,
        selector=selector,
        policy=DispatchPolicy(
            drain_interval=config.drain_interval,
            send_timeout=config.send_timeout,
            max_concurrent_dispatches=config.max_concurrent_dispatches,
            stop_grace_period=config.grace_period,
        ),
    )
    container.register("agent", agent)

    # 5. 可观测性
    health_checker = HealthChecker()
    health_checker.register("transports", transport_check(registry))
    health_checker.register("queue", queue_check(queue))
    container.register("health_checker", health_checker)

    metrics_collector = MetricsCollector(agent)
    container.register("metrics_collector", metrics_collector)

    if config.health_enabled:
        observability_server = ObservabilityServer(
            health_checker=health_checker,
            metrics_collector=metrics_collector,
            agent=agent,
        )
        container.register("observability_server", observability_server)

    container.mark_initialized()
    logger.info("依赖容器初始化完成")

    return container
