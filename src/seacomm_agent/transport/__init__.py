"""
链路层

无线电 / 蜂窝 / 卫星 / WiFi 驱动、故障模型与注册表。
"""

from seacomm_agent.transport.base import DriverConfig, DriverStats, TransportDriver
from seacomm_agent.transport.cellular import CellularConfig, CellularDriver
from seacomm_agent.transport.faults import FaultModel
from seacomm_agent.transport.radio import RadioConfig, RadioDriver
from seacomm_agent.transport.reconnect import ExponentialBackoff, ReconnectConfig
from seacomm_agent.transport.registry import TransportRegistry
from seacomm_agent.transport.satellite import SatelliteConfig, SatelliteDriver
from seacomm_agent.transport.wifi import WifiConfig, WifiDriver

__all__ = [
    # 基类
    "DriverConfig",
    "DriverStats",
    "TransportDriver",
    "FaultModel",
    # 驱动
    "RadioConfig",
    "RadioDriver",
    "CellularConfig",
    "CellularDriver",
    "SatelliteConfig",
    "SatelliteDriver",
    "WifiConfig",
    "WifiDriver",
    # 注册表
    "ExponentialBackoff",
    "ReconnectConfig",
    "TransportRegistry",
]
