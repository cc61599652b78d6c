"""
工具模块
"""

from seacomm_agent.utils.ids import generate_message_id
from seacomm_agent.utils.time import format_duration, to_iso

__all__ = [
    "generate_message_id",
    "to_iso",
    "format_duration",
]
