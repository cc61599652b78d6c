"""
链路驱动工厂

根据配置中的 transports 映射创建驱动实例并组装注册表。
每项配置的 type 缺省与链路名称相同，faults 子项构造故障模型。
"""

from dataclasses import fields
from typing import Any

from loguru import logger

from seacomm_agent.config import AgentConfig
from seacomm_agent.domain.errors import ConfigError
from seacomm_agent.transport.base import DriverConfig, TransportDriver
from seacomm_agent.transport.cellular import CellularDriver
from seacomm_agent.transport.faults import FaultModel
from seacomm_agent.transport.radio import RadioDriver
from seacomm_agent.transport.reconnect import ReconnectConfig
from seacomm_agent.transport.registry import TransportRegistry
from seacomm_agent.transport.satellite import SatelliteDriver
from seacomm_agent.transport.wifi import WifiDriver

DRIVER_TYPES: dict[str, type[TransportDriver]] = {
    "radio": RadioDriver,
    "cellular": CellularDriver,
    "satellite": SatelliteDriver,
    "wifi": WifiDriver,
}

# 非驱动配置字段
_META_KEYS = {"type", "faults"}


def build_driver_config(driver_cls: type[TransportDriver], settings: dict[str, Any]) -> DriverConfig:
    """把配置字典转换为驱动配置（未知键报错）"""
    config_cls = type(driver_cls.default_config())
    known = {f.name for f in fields(config_cls)}
    values = {k: v for k, v in settings.items() if k not in _META_KEYS}

    unknown = set(values) - known
    if unknown:
        raise ConfigError(
            f"{driver_cls.__name__} 不支持的配置项: {sorted(unknown)}",
            config_key=",".join(sorted(unknown)),
        )
    for key in ("rssi_range",):
        if key in values and values[key] is not None:
            values[key] = tuple(values[key])

    try:
        return config_cls(**values)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{driver_cls.__name__} 配置错误: {e}") from e


def create_driver(
    name: str,
    settings: dict[str, Any] | None = None,
    time_scale: float | None = None,
) -> TransportDriver:
    """
    创建单个驱动

    Args:
        name: 链路名称
        settings: 驱动配置（含可选 type / faults）
        time_scale: 默认模拟等待缩放（faults 中显式给出时以其为准）

    Returns:
        驱动实例
    """
    settings = dict(settings or {})
    driver_type = str(settings.get("type") or name).lower()
    driver_cls = DRIVER_TYPES.get(driver_type)
    if driver_cls is None:
        raise ConfigError(
            f"未知链路类型: {driver_type}，可选 {sorted(DRIVER_TYPES)}",
            config_key=f"transports.{name}.type",
        )

    try:
        faults = FaultModel.from_dict(settings.get("faults"), time_scale=time_scale)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"链路 {name} 故障模型配置错误: {e}", config_key=f"transports.{name}.faults") from e

    config = build_driver_config(driver_cls, settings)
    return driver_cls(name=name, config=config, faults=faults)


def create_registry(config: AgentConfig) -> TransportRegistry:
    """根据 Agent 配置创建注册表（仅启用的链路）"""
    reconnect_data = dict(config.reconnect)
    reconnect_data.setdefault("health_check_interval", config.health_check_interval)
    reconnect = ReconnectConfig.from_dict(reconnect_data)

    drivers = [
        create_driver(name, settings, time_scale=config.time_scale)
        for name, settings in config.enabled_transports.items()
    ]
    logger.info(f"已创建链路驱动: {[d.name for d in drivers]}")
    return TransportRegistry(drivers, reconnect=reconnect)
