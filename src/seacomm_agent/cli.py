"""命令行入口

支持 run, doctor, print-config, send, queue 命令。
"""

import argparse
import asyncio
import importlib
import sys
import time
from pathlib import Path

import yaml
from loguru import logger

from seacomm_agent import __version__
from seacomm_agent.config import (
    AGENT_CONFIG_FILE,
    DATA_ROOT,
    PROJECT_ROOT,
    AgentConfig,
    init_agent_config,
)
from seacomm_agent.domain.enums import MessageStatus, Priority
from seacomm_agent.domain.errors import AgentError
from seacomm_agent.utils import json
from seacomm_agent.utils.logging import setup_logging
from seacomm_agent.utils.time import format_duration, to_iso


def _log_block(message: str) -> None:
    logger.info("{}", message.rstrip())


def _run_loop(coro, cancel_timeout: float = 5.0):
    """使用独立事件循环运行，避免 asyncio.run() 覆盖信号处理"""
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    except KeyboardInterrupt:
        logger.info("收到 KeyboardInterrupt，开始清理")
        return None
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                try:
                    loop.run_until_complete(
                        asyncio.wait_for(
                            asyncio.gather(*pending, return_exceptions=True),
                            timeout=cancel_timeout,
                        )
                    )
                except TimeoutError:
                    logger.warning("取消任务超时，仍有 {} 个任务未完成", len(pending))
            loop.run_until_complete(loop.shutdown_asyncgens())
        finally:
            loop.close()


# ==================== doctor ====================

def run_doctor(config_file: str | None = None) -> int:
    """
    运行环境诊断

    检查项目:
    1. Python 版本
    2. 核心模块导入
    3. 配置文件与链路配置
    4. 数据目录可写
    5. 电源信息

    Returns:
        0 表示全部通过，非 0 表示有问题
    """
    import psutil

    _log_block(
        f"  SeaComm Agent v{__version__} - 环境诊断\n"
        "  " + "=" * 40
    )

    issues = []

    logger.info("检查 Python 版本")
    py_version = sys.version_info
    if py_version >= (3, 11):
        logger.info("OK  Python {}.{}.{}", py_version.major, py_version.minor, py_version.micro)
    else:
        msg = f"Python 版本过低: {py_version.major}.{py_version.minor} (需要 >= 3.11)"
        logger.error("FAIL {}", msg)
        issues.append(msg)

    logger.info("检查 核心模块导入")
    core_modules = [
        ("domain", "seacomm_agent.domain"),
        ("transport", "seacomm_agent.transport"),
        ("compression", "seacomm_agent.compression"),
        ("engine", "seacomm_agent.engine"),
        ("observability", "seacomm_agent.observability"),
        ("app", "seacomm_agent.app"),
    ]
    for name, module in core_modules:
        try:
            importlib.import_module(module)
            logger.info("OK  {}", name)
        except ImportError as e:
            msg = f"模块导入失败 {name}: {e}"
            logger.error("FAIL {}", msg)
            issues.append(msg)

    logger.info("检查 配置")
    config: AgentConfig | None = None
    try:
        config = init_agent_config(config_file)
        logger.info("OK  配置有效 ({})", config_file or AGENT_CONFIG_FILE)
    except AgentError as e:
        msg = f"配置无效: {e.message}"
        logger.error("FAIL {}", msg)
        issues.append(msg)

    if config is not None:
        from seacomm_agent.transport.factory import create_driver

        enabled = config.enabled_transports
        if not enabled:
            msg = "没有启用任何链路"
            logger.error("FAIL {}", msg)
            issues.append(msg)
        for name, settings in enabled.items():
            try:
                driver = create_driver(name, settings, time_scale=config.time_scale)
                logger.info(
                    "OK  链路 {}: max_payload={}B cost_per_byte={} latency={}ms",
                    name,
                    driver.max_payload_bytes,
                    driver.cost_per_byte,
                    driver.config.typical_latency_ms,
                )
            except AgentError as e:
                msg = f"链路 {name} 配置错误: {e.message}"
                logger.error("FAIL {}", msg)
                issues.append(msg)

        logger.info("检查 数据目录")
        try:
            config.ensure_directories()
            probe = Path(config.queue_dir) / ".doctor"
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
            logger.info("OK  {}", config.data_dir)
        except OSError as e:
            msg = f"数据目录不可写: {config.data_dir}: {e}"
            logger.error("FAIL {}", msg)
            issues.append(msg)

    logger.info("检查 电源")
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, NotImplementedError, OSError):
        battery = None
    if battery is None:
        logger.warning("未检测到电池信息")
    else:
        logger.info(
            "OK  电量 {}% ({})",
            round(battery.percent, 1),
            "外接电源" if battery.power_plugged else "电池供电",
        )

    if issues:
        logger.error("诊断完成: 发现 {} 个问题", len(issues))
        for i, issue in enumerate(issues, 1):
            logger.error("{}. {}", i, issue)
        return 1

    logger.info("诊断完成: 所有检查通过")
    return 0


# ==================== print-config ====================

def print_config(config_format: str = "yaml", config_file: str | None = None) -> None:
    """
    打印当前有效配置

    Args:
        config_format: 输出格式 (yaml/json)
        config_file: 配置文件路径
    """
    config = init_agent_config(config_file)
    config_dict = config.to_dict()
    config_dict["_paths"] = {
        "project_root": str(PROJECT_ROOT),
        "data_root": str(DATA_ROOT),
        "config_file": str(config_file or AGENT_CONFIG_FILE),
    }

    if config_format == "json":
        logger.info("{}", json.dumps(config_dict, indent=2))
    else:
        logger.info("{}", yaml.safe_dump(config_dict, allow_unicode=True, default_flow_style=False, sort_keys=False))


# ==================== run ====================

def start_agent(config: AgentConfig) -> None:
    """启动 Agent 服务并运行到收到关闭信号"""
    from seacomm_agent.app.main import run_agent

    config.ensure_directories()
    _run_loop(run_agent(config), cancel_timeout=min(5.0, config.grace_period))


# ==================== send ====================

async def _send_once(config: AgentConfig, payload: bytes, priority: Priority, timeout: float) -> dict | None:
    from seacomm_agent.app.main import Application

    app = Application(config)
    await app.start()
    try:
        message_id = await app.agent.submit(payload, priority)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            status = app.agent.status(message_id)
            if status and MessageStatus(status["status"]).is_terminal:
                return status
            await asyncio.sleep(0.1)
        return app.agent.status(message_id)
    finally:
        await app.shutdown()


def send_message(
    config: AgentConfig,
    payload: bytes,
    priority: Priority,
    timeout: float,
) -> int:
    """
    提交一条消息并等待其终态

    Returns:
        0 表示已送达；1 表示失败或超时（消息仍保留在持久化队列中）
    """
    config.health_enabled = False
    status = _run_loop(_send_once(config, payload, priority, timeout))
    if status is None:
        logger.error("发送未完成")
        return 1

    logger.info("{}", json.dumps(status, indent=2))
    if status["status"] == MessageStatus.SENT.value:
        logger.info("已送达: {} via {}", status["id"], status.get("assigned_transport"))
        return 0
    logger.warning("消息 {} 当前状态: {}", status["id"], status["status"])
    return 1


# ==================== queue ====================

def show_queue(
    config: AgentConfig,
    message_id: str | None = None,
    limit: int = 20,
    priority: Priority | None = None,
) -> int:
    """离线查看持久化队列与终态账本"""
    from seacomm_agent.engine.store import QueueStore

    store = QueueStore(config.queue_dir)
    messages, outcomes = store.read_sync()

    if message_id:
        message = next((m for m in messages if m.id == message_id), None)
        record = message.status_view() if message else outcomes.get(message_id)
        if record is None:
            logger.error("未找到消息: {}", message_id)
            return 1
        logger.info("{}", json.dumps(record, indent=2))
        return 0

    now = time.time()
    if priority is not None:
        messages = [m for m in messages if m.priority == priority]
    messages.sort(key=lambda m: m.sort_key())
    lines = [f"  待发送 {len(messages)} 条 (容量 {config.queue_capacity})，终态记录 {len(outcomes)} 条"]
    for message in messages[:limit]:
        retry = (
            f" retry_in={format_duration(max(message.next_retry_at - now, 0) * 1000)}"
            if message.next_retry_at
            else ""
        )
        lines.append(
            f"  {message.id} {message.priority.value:<8} {message.status.value:<15} "
            f"{message.size}B attempts={message.attempts} created={to_iso(message.created_at)}{retry}"
        )
    if len(messages) > limit:
        lines.append(f"  ... 另有 {len(messages) - limit} 条")

    recent = sorted(outcomes.values(), key=lambda r: r.get("finished_at") or 0)[-limit:]
    if recent:
        lines.append("  最近终态:")
        for record in recent:
            lines.append(
                f"  {record['id']} {record['status']:<10} via={record.get('assigned_transport') or '-'} "
                f"error={record.get('last_error') or '-'}"
            )
    _log_block("\n".join(lines))
    return 0


async def _transfer_queue(
    config: AgentConfig,
    export_path: str | None,
    import_path: str | None,
    clear: bool,
) -> dict:
    from seacomm_agent.engine.outbox import TransmissionQueue
    from seacomm_agent.engine.store import QueueStore

    queue = TransmissionQueue(capacity=config.queue_capacity, store=QueueStore(config.queue_dir))
    await queue.load()
    result: dict = {}
    if export_path:
        result["exported"] = await queue.export_queue(export_path)
    if clear:
        result["cleared"] = await queue.clear()
    if import_path:
        result.update(await queue.import_queue(import_path))
    return result


def transfer_queue(
    config: AgentConfig,
    export_path: str | None = None,
    import_path: str | None = None,
    clear: bool = False,
) -> int:
    """
    离线导出 / 清空 / 导入持久化队列

    按 导出 -> 清空 -> 导入 的顺序执行，Agent 运行时不要使用。
    """
    result = _run_loop(_transfer_queue(config, export_path, import_path, clear))
    if result is None:
        return 1
    logger.info("{}", json.dumps(result, indent=2))
    return 0


# ==================== main ====================

def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default=None, help=f"配置文件 (默认: {AGENT_CONFIG_FILE})")


def _cli_overrides(args: argparse.Namespace) -> dict:
    return {
        "name": getattr(args, "name", None),
        "health_host": getattr(args, "host", None),
        "health_port": getattr(args, "port", None),
        "data_dir": getattr(args, "data_dir", None),
        "log_level": getattr(args, "log_level", None),
        "time_scale": getattr(args, "time_scale", None),
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="seacomm-agent",
        description=f"SeaComm Agent v{__version__}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
使用方式:
  启动 Agent:   python -m seacomm_agent run --name "vessel-007"
  环境诊断:     python -m seacomm_agent doctor
  查看配置:     python -m seacomm_agent print-config --format json
  发送消息:     python -m seacomm_agent send "pos=12.5,-33.1" --priority high
  查看队列:     python -m seacomm_agent queue --priority high
  队列交接:     python -m seacomm_agent queue --export backup.json

优雅关闭:
  第一次 SIGTERM / SIGINT 等待在途发送完成，第二次立即退出。

健康检查端点:
  GET /health       - 基本状态
  GET /health/live  - 存活探针
  GET /health/ready - 就绪探针（至少一条可用链路且队列未饱和）
  GET /metrics      - Prometheus 指标
        """,
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="日志级别，默认取配置",
    )

    subparsers = parser.add_subparsers(dest="command", help="可用命令")

    run_parser = subparsers.add_parser("run", help="启动 Agent")
    _add_config_argument(run_parser)
    run_parser.add_argument("--name", default=None, help="设备名称")
    run_parser.add_argument("--host", default=None, help="可观测性服务绑定地址")
    run_parser.add_argument("--port", type=int, default=None, help="可观测性服务端口")
    run_parser.add_argument("--data-dir", default=None, help="数据目录")
    run_parser.add_argument("--time-scale", type=float, default=None, help="模拟等待缩放 (1.0 = 实时)")

    doctor_parser = subparsers.add_parser("doctor", help="运行环境诊断")
    _add_config_argument(doctor_parser)

    config_parser = subparsers.add_parser("print-config", help="打印当前配置")
    _add_config_argument(config_parser)
    config_parser.add_argument(
        "--format",
        default="yaml",
        choices=["yaml", "json"],
        help="输出格式 (yaml/json)",
    )

    send_parser = subparsers.add_parser("send", help="提交一条消息并等待结果")
    _add_config_argument(send_parser)
    send_parser.add_argument("payload", nargs="?", default=None, help="消息内容（UTF-8 文本）")
    send_parser.add_argument("--file", default=None, help="从文件读取负载")
    send_parser.add_argument(
        "--priority",
        default="normal",
        choices=[p.value for p in Priority],
        help="优先级",
    )
    send_parser.add_argument("--timeout", type=float, default=60.0, help="等待终态的时间（秒）")
    send_parser.add_argument("--data-dir", default=None, help="数据目录")
    send_parser.add_argument("--time-scale", type=float, default=None, help="模拟等待缩放")

    queue_parser = subparsers.add_parser("queue", help="查看持久化队列")
    _add_config_argument(queue_parser)
    queue_parser.add_argument("--id", default=None, help="只查看指定消息")
    queue_parser.add_argument("--limit", type=int, default=20, help="最多列出条数")
    queue_parser.add_argument(
        "--priority",
        default=None,
        choices=[p.value for p in Priority],
        help="只列出指定优先级",
    )
    queue_parser.add_argument("--export", dest="export_path", default=None, help="导出待发送消息到文件")
    queue_parser.add_argument("--import", dest="import_path", default=None, help="从导出文件导入消息")
    queue_parser.add_argument("--clear", action="store_true", help="清空排队中的消息")
    queue_parser.add_argument("--data-dir", default=None, help="数据目录")

    return parser


def main(argv: list[str] | None = None):
    """主入口"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    setup_logging(level=args.log_level or "INFO")

    try:
        if args.command == "doctor":
            sys.exit(run_doctor(args.config))

        if args.command == "print-config":
            print_config(config_format=args.format, config_file=args.config)
            return

        config = init_agent_config(args.config, **_cli_overrides(args))
        setup_logging(level=config.log_level, log_file=config.log_file)

        if args.command == "run":
            start_agent(config)
            return

        if args.command == "send":
            if args.file:
                payload = Path(args.file).read_bytes()
            elif args.payload is not None:
                payload = args.payload.encode("utf-8")
            else:
                parser.error("send 需要 payload 或 --file")
            sys.exit(send_message(config, payload, Priority.parse(args.priority), args.timeout))

        if args.command == "queue":
            if args.export_path or args.import_path or args.clear:
                sys.exit(
                    transfer_queue(
                        config,
                        export_path=args.export_path,
                        import_path=args.import_path,
                        clear=args.clear,
                    )
                )
            priority = Priority.parse(args.priority) if args.priority else None
            sys.exit(show_queue(config, message_id=args.id, limit=args.limit, priority=priority))

    except AgentError as e:
        logger.error("{}: {}", e.code, e.message)
        sys.exit(2)


if __name__ == "__main__":
    main()
