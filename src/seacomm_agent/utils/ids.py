"""
ID 生成工具
"""

import time
import uuid


def generate_message_id(prefix: str = "msg") -> str:
    """
    生成消息 ID

    格式: {prefix}-{timestamp_ms}-{random}
    """
    ts = int(time.time() * 1000)
    rand = uuid.uuid4().hex[:8]
    return f"{prefix}-{ts}-{rand}"
