"""
可观测性 HTTP 服务器

提供健康检查和 Prometheus 指标端点。
"""

from typing import Any

from aiohttp import web
from loguru import logger

from seacomm_agent.observability.health import HealthChecker, HealthStatus
from seacomm_agent.observability.metrics import MetricsCollector
from seacomm_agent.utils import json


class ObservabilityServer:
    """
    可观测性 HTTP 服务器

    提供以下端点:
    - GET /health       - 基本健康检查
    - GET /health/live  - 存活探针
    - GET /health/ready - 就绪探针
    - GET /metrics      - Prometheus 指标
    - GET /stats        - Agent 统计（JSON）
    """

    def __init__(
        self,
        health_checker: HealthChecker | None = None,
        metrics_collector: MetricsCollector | None = None,
        agent: Any = None,
    ):
        """
        初始化可观测性服务器

        Args:
            health_checker: 健康检查器实例
            metrics_collector: 指标收集器实例
            agent: 通信 Agent（/stats 数据来源）
        """
        self._health_checker = health_checker or HealthChecker()
        self._metrics_collector = metrics_collector or MetricsCollector(agent)
        self._agent = agent
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._host: str = "127.0.0.1"
        self._port: int = 8101

    @property
    def health_checker(self) -> HealthChecker:
        """获取健康检查器"""
        return self._health_checker

    @property
    def metrics_collector(self) -> MetricsCollector:
        """获取指标收集器"""
        return self._metrics_collector

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def health(self, request: web.Request) -> web.Response:
        """GET /health"""
        return web.json_response({
            "status": "ok",
            "service": "seacomm-agent",
        })

    async def liveness(self, request: web.Request) -> web.Response:
        """GET /health/live"""
        result = self._health_checker.liveness()
        status_code = 200 if result.status == HealthStatus.HEALTHY else 503

        return web.json_response(
            {
                "status": result.status.value,
                "message": result.message,
            },
            status=status_code,
        )

    async def readiness(self, request: web.Request) -> web.Response:
        """
        GET /health/ready

        DEGRADED 仍返回 200，仅 UNHEALTHY 返回 503。
        """
        result = self._health_checker.readiness()
        status_code = 503 if result.status == HealthStatus.UNHEALTHY else 200

        return web.json_response(
            {
                "status": result.status.value,
                "message": result.message,
                "details": result.details,
            },
            status=status_code,
        )

    async def metrics(self, request: web.Request) -> web.Response:
        """GET /metrics"""
        prometheus_text = self._metrics_collector.to_prometheus()
        return web.Response(
            text=prometheus_text,
            content_type="text/plain",
        )

    async def stats(self, request: web.Request) -> web.Response:
        """GET /stats"""
        if self._agent is None:
            return web.json_response({"error": "agent not attached"}, status=404)
        return web.json_response(self._agent.get_stats(), dumps=json.dumps)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health)
        app.router.add_get("/health/live", self.liveness)
        app.router.add_get("/health/ready", self.readiness)
        app.router.add_get("/metrics", self.metrics)
        app.router.add_get("/stats", self.stats)
        return app

    async def start(self, host: str = "127.0.0.1", port: int = 8101) -> None:
        """
        启动 HTTP 服务器

        Args:
            host: 绑定地址
            port: 绑定端口
        """
        self._host = host
        self._port = port

        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()

        logger.info(f"可观测性服务已启动: http://{host}:{port}")
        logger.info(f"  就绪探针: http://{host}:{port}/health/ready")
        logger.info(f"  Prometheus 指标: http://{host}:{port}/metrics")

    async def stop(self) -> None:
        """停止 HTTP 服务器"""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("可观测性服务已停止")

    def set_ready(self, ready: bool) -> None:
        """设置就绪状态"""
        self._health_checker.set_ready(ready)

    def register_health_check(self, name: str, check: Any) -> None:
        """注册健康检查"""
        self._health_checker.register(name, check)
