"""
SeaComm Agent

渔船船载单元的边缘通信代理，负责：
- 多链路传输（LoRa 电台 / 蜂窝 / 卫星 / 港口 Wi-Fi）
- 负载压缩与编码选择
- 持久化优先级发送队列（指数退避重试）
- 链路选择与 CRITICAL 消息多链路广播
"""

__version__ = "0.1.0"

# 导出子模块
from seacomm_agent import compression, domain, engine, transport

__all__ = [
    "__version__",
    # 子模块
    "domain",
    "transport",
    "compression",
    "engine",
]
