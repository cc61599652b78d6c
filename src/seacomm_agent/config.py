"""
Agent 配置模块

配置来源按以下顺序合并（后者覆盖前者）：
默认值 < YAML 配置文件 < .env / 环境变量（SEACOMM_*）< 命令行参数
"""

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles
import yaml
from dotenv import load_dotenv
from loguru import logger

from seacomm_agent.domain.errors import ConfigError

# Agent 包目录
AGENT_ROOT = Path(__file__).parent
# 项目根目录（运行时数据统一放在 data/ 下）
PROJECT_ROOT = AGENT_ROOT.parent.parent  # src/seacomm_agent -> project root
DATA_ROOT = PROJECT_ROOT / "data" / "agent"

# Agent 配置文件路径
AGENT_CONFIG_FILE = DATA_ROOT / "agent_config.yaml"

ENV_PREFIX = "SEACOMM_"

# 各链路默认设置（键为链路名称，type 缺省时与名称相同）
DEFAULT_TRANSPORTS: dict[str, dict[str, Any]] = {
    "radio": {
        "enabled": True,
        "frequency_hz": 868e6,
        "bandwidth_hz": 125e3,
        "spreading_factor": 7,
        "coding_rate": 5,
        "tx_power_dbm": 14,
    },
    "cellular": {
        "enabled": True,
        "apn": "internet",
        "carrier": "",
        "sms_only": False,
        "min_signal_quality": 15,
    },
    "satellite": {
        "enabled": True,
        "system": "iridium",
        "cost_per_kb": 0.05,
    },
    "wifi": {
        "enabled": False,
        "ssid": "harbor",
    },
}

_ENV_LOADED = False


def _load_env_file() -> None:
    """加载 .env 环境变量（仅一次）"""
    global _ENV_LOADED
    if _ENV_LOADED:
        return
    _ENV_LOADED = True

    env_path = PROJECT_ROOT / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=False)


def _get_env_value(*keys: str) -> str | None:
    """按优先顺序读取环境变量"""
    for key in keys:
        value = os.getenv(key)
        if value is not None and value != "":
            return value
    return None


def _get_env_int(*keys: str) -> int | None:
    value = _get_env_value(*keys)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"环境变量 {keys[0]} 不是整数: {value}", config_key=keys[0]) from None


def _get_env_float(*keys: str) -> float | None:
    value = _get_env_value(*keys)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"环境变量 {keys[0]} 不是数字: {value}", config_key=keys[0]) from None


def _get_env_bool(*keys: str) -> bool | None:
    value = _get_env_value(*keys)
    if value is None:
        return None
    return value.lower() in ("1", "true", "yes", "on")


def _normalize_path(path_value: str) -> str:
    """将路径标准化为绝对路径（相对路径基于项目根目录）"""
    expanded = os.path.expandvars(os.path.expanduser(str(path_value))).strip()
    if not expanded:
        return expanded

    path = Path(expanded)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return str(path)


# 标量配置项 -> (环境变量后缀, 解析函数)
_ENV_FIELDS = {
    "name": ("NAME", _get_env_value),
    "data_dir": ("DATA_DIR", _get_env_value),
    "health_host": ("HEALTH_HOST", _get_env_value),
    "health_port": ("HEALTH_PORT", _get_env_int),
    "health_enabled": ("HEALTH_ENABLED", _get_env_bool),
    "log_level": ("LOG_LEVEL", _get_env_value),
    "log_file": ("LOG_FILE", _get_env_value),
    "drain_interval": ("DRAIN_INTERVAL", _get_env_float),
    "queue_capacity": ("QUEUE_CAPACITY", _get_env_int),
    "max_attempts": ("MAX_ATTEMPTS", _get_env_int),
    "retry_base_delay": ("RETRY_BASE_DELAY", _get_env_float),
    "send_timeout": ("SEND_TIMEOUT", _get_env_float),
    "grace_period": ("GRACE_PERIOD", _get_env_float),
    "max_concurrent_dispatches": ("MAX_CONCURRENT_DISPATCHES", _get_env_int),
    "compression_max_time_ms": ("COMPRESSION_MAX_TIME_MS", _get_env_float),
    "health_check_interval": ("HEALTH_CHECK_INTERVAL", _get_env_float),
    "time_scale": ("TIME_SCALE", _get_env_float),
}

# 链路配置项 -> (环境变量后缀, 解析函数)
_ENV_TRANSPORT_FIELDS = {
    "radio": {
        "enabled": ("RADIO_ENABLED", _get_env_bool),
        "frequency_hz": ("RADIO_FREQUENCY_HZ", _get_env_float),
        "spreading_factor": ("RADIO_SPREADING_FACTOR", _get_env_int),
    },
    "cellular": {
        "enabled": ("CELLULAR_ENABLED", _get_env_bool),
        "apn": ("CELLULAR_APN", _get_env_value),
        "carrier": ("CELLULAR_CARRIER", _get_env_value),
        "sim_number": ("CELLULAR_SIM_NUMBER", _get_env_value),
        "sms_recipient": ("CELLULAR_SMS_RECIPIENT", _get_env_value),
        "sms_only": ("CELLULAR_SMS_ONLY", _get_env_bool),
    },
    "satellite": {
        "enabled": ("SATELLITE_ENABLED", _get_env_bool),
        "system": ("SATELLITE_SYSTEM", _get_env_value),
    },
    "wifi": {
        "enabled": ("WIFI_ENABLED", _get_env_bool),
        "ssid": ("WIFI_SSID", _get_env_value),
    },
}


def _load_env_config() -> dict[str, Any]:
    """读取环境变量配置"""
    env_config: dict[str, Any] = {}

    for key, (suffix, reader) in _ENV_FIELDS.items():
        value = reader(ENV_PREFIX + suffix)
        if value is not None:
            env_config[key] = value

    transports: dict[str, dict[str, Any]] = {}
    for transport, fields in _ENV_TRANSPORT_FIELDS.items():
        for key, (suffix, reader) in fields.items():
            value = reader(ENV_PREFIX + suffix)
            if value is not None:
                transports.setdefault(transport, {})[key] = value
    if transports:
        env_config["transports"] = transports

    return env_config


def merge_transports(
    base: dict[str, dict[str, Any]],
    override: dict[str, dict[str, Any]] | None,
) -> dict[str, dict[str, Any]]:
    """按链路逐项合并设置"""
    merged = copy.deepcopy(base)
    for name, settings in (override or {}).items():
        if settings is None:
            continue
        if not isinstance(settings, dict):
            raise ConfigError(f"链路 {name} 的配置必须是映射", config_key=f"transports.{name}")
        merged.setdefault(name, {}).update(settings)
    return merged


@dataclass
class AgentConfig:
    """Agent 配置类"""

    # 基本配置
    name: str = "vessel-unit-001"
    version: str = "0.1.0"
    data_dir: str = field(default_factory=lambda: str(DATA_ROOT))

    # 可观测性
    health_enabled: bool = True
    health_host: str = "0.0.0.0"
    health_port: int = 8101

    # 日志
    log_level: str = "INFO"
    log_file: str | None = None

    # 调度
    drain_interval: float = 5.0              # 排空周期（秒）
    max_concurrent_dispatches: int = 4       # 并发调度上限（CRITICAL 不受限）
    send_timeout: float = 30.0               # 单次发送超时（秒）
    grace_period: float = 10.0               # 停机时等待在途调度的时间（秒）

    # 队列
    queue_capacity: int = 1000
    max_attempts: int = 3
    retry_base_delay: float = 5.0            # 重试基础延迟（秒），按 2^(n-1) 增长

    # 压缩
    compression_max_time_ms: float = 50.0    # 压缩时间预算

    # 链路维护
    health_check_interval: float = 30.0
    reconnect: dict[str, Any] = field(default_factory=dict)

    # 模拟等待缩放（1.0 = 实时）
    time_scale: float = 1.0

    transports: dict[str, dict[str, Any]] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_TRANSPORTS)
    )

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """校验配置，非法值抛出 ConfigError"""
        positive = {
            "queue_capacity": self.queue_capacity,
            "max_attempts": self.max_attempts,
            "max_concurrent_dispatches": self.max_concurrent_dispatches,
            "drain_interval": self.drain_interval,
            "send_timeout": self.send_timeout,
            "grace_period": self.grace_period,
            "health_check_interval": self.health_check_interval,
        }
        for key, value in positive.items():
            if value is None or value <= 0:
                raise ConfigError(f"{key} 必须为正数: {value}", config_key=key)

        if self.retry_base_delay < 0:
            raise ConfigError(
                f"retry_base_delay 不能为负: {self.retry_base_delay}",
                config_key="retry_base_delay",
            )
        if self.time_scale < 0:
            raise ConfigError(f"time_scale 不能为负: {self.time_scale}", config_key="time_scale")
        if not 0 <= self.health_port <= 65535:
            raise ConfigError(f"health_port 非法: {self.health_port}", config_key="health_port")
        if not isinstance(self.transports, dict):
            raise ConfigError("transports 必须是映射", config_key="transports")
        for name, settings in self.transports.items():
            if not isinstance(settings, dict):
                raise ConfigError(
                    f"链路 {name} 的配置必须是映射", config_key=f"transports.{name}"
                )

    @property
    def queue_dir(self) -> str:
        """队列持久化目录"""
        return os.path.join(self.data_dir, "queue")

    @property
    def logs_dir(self) -> str:
        """日志目录"""
        return os.path.join(self.data_dir, "logs")

    @property
    def enabled_transports(self) -> dict[str, dict[str, Any]]:
        return {
            name: settings
            for name, settings in self.transports.items()
            if settings.get("enabled", True)
        }

    def ensure_directories(self):
        """确保所有存储目录存在"""
        for dir_path in [self.queue_dir, self.logs_dir]:
            os.makedirs(dir_path, exist_ok=True)

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "name": self.name,
            "version": self.version,
            "data_dir": self.data_dir,
            "health_enabled": self.health_enabled,
            "health_host": self.health_host,
            "health_port": self.health_port,
            "log_level": self.log_level,
            "log_file": self.log_file,
            "drain_interval": self.drain_interval,
            "max_concurrent_dispatches": self.max_concurrent_dispatches,
            "send_timeout": self.send_timeout,
            "grace_period": self.grace_period,
            "queue_capacity": self.queue_capacity,
            "max_attempts": self.max_attempts,
            "retry_base_delay": self.retry_base_delay,
            "compression_max_time_ms": self.compression_max_time_ms,
            "health_check_interval": self.health_check_interval,
            "reconnect": copy.deepcopy(self.reconnect),
            "time_scale": self.time_scale,
            "transports": copy.deepcopy(self.transports),
        }

    def save_to_file(self, path: Path | None = None) -> None:
        """保存配置到文件（同步版本，用于启动时）"""
        path = Path(path or AGENT_CONFIG_FILE)
        os.makedirs(path.parent, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, allow_unicode=True, default_flow_style=False)

    async def save_to_file_async(self, path: Path | None = None) -> None:
        """保存配置到文件（异步版本，用于运行时更新）"""
        path = Path(path or AGENT_CONFIG_FILE)
        yaml_content = yaml.safe_dump(self.to_dict(), allow_unicode=True, default_flow_style=False)
        os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(yaml_content)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentConfig":
        """从字典创建（未知键忽略，transports 与默认值逐项合并）"""
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None}
        if "transports" in known:
            known["transports"] = merge_transports(DEFAULT_TRANSPORTS, known["transports"])
        try:
            return cls(**known)
        except TypeError as e:
            raise ConfigError(f"配置格式错误: {e}") from e

    @classmethod
    def load_from_file(cls, path: Path | None = None) -> "AgentConfig":
        """从文件加载配置（同步版本，用于启动时）"""
        path = Path(path or AGENT_CONFIG_FILE)
        if not path.exists():
            return cls()
        with open(path, encoding="utf-8") as f:
            content = f.read()
        return cls.from_dict(_parse_yaml(content, path))

    @classmethod
    async def load_from_file_async(cls, path: Path | None = None) -> "AgentConfig":
        """从文件加载配置（异步版本，用于运行时重载）"""
        path = Path(path or AGENT_CONFIG_FILE)
        if not path.exists():
            return cls()
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
        return cls.from_dict(_parse_yaml(content, path))


def _parse_yaml(content: str, path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"配置文件解析失败: {path}: {e}", config_key=str(path)) from e
    if not isinstance(data, dict):
        raise ConfigError(f"配置文件顶层必须是映射: {path}", config_key=str(path))
    return data


# 全局配置实例
_agent_config: AgentConfig | None = None


def get_agent_config() -> AgentConfig:
    """获取全局 Agent 配置"""
    global _agent_config
    if _agent_config is None:
        _agent_config = AgentConfig.load_from_file()
    return _agent_config


def set_agent_config(config: AgentConfig):
    """设置全局 Agent 配置"""
    global _agent_config
    _agent_config = config


def init_agent_config(config_file: str | Path | None = None, **overrides) -> AgentConfig:
    """
    初始化 Agent 配置

    Args:
        config_file: YAML 配置文件路径（默认 data/agent/agent_config.yaml）
        **overrides: 命令行参数（值为 None 的项不覆盖）

    Returns:
        初始化后的 Agent 配置
    """
    _load_env_file()
    env_config = _load_env_config()

    path = Path(config_file) if config_file else AGENT_CONFIG_FILE
    file_config: dict[str, Any] = {}
    if path.exists():
        with open(path, encoding="utf-8") as f:
            file_config = _parse_yaml(f.read(), path)
        logger.info("已加载配置文件: {}", path)
    elif config_file:
        raise ConfigError(f"配置文件不存在: {path}", config_key="config_file")

    # 合并配置：配置文件 < 环境变量 < 命令行
    cli_config = {k: v for k, v in overrides.items() if v is not None}
    merged: dict[str, Any] = {}
    transports = copy.deepcopy(DEFAULT_TRANSPORTS)
    for layer in (file_config, env_config, cli_config):
        layer = dict(layer)
        transports = merge_transports(transports, layer.pop("transports", None))
        merged.update(layer)
    merged["transports"] = transports

    if merged.get("data_dir"):
        merged["data_dir"] = _normalize_path(str(merged["data_dir"]))
    if merged.get("log_file"):
        merged["log_file"] = _normalize_path(str(merged["log_file"]))

    config = AgentConfig.from_dict(merged)
    logger.info(
        "配置加载完成: name={} transports={} capacity={} max_attempts={}",
        config.name,
        list(config.enabled_transports),
        config.queue_capacity,
        config.max_attempts,
    )

    config.ensure_directories()
    set_agent_config(config)
    return config
