"""
时间工具
"""

from datetime import UTC, datetime


def to_iso(ts: float | None) -> str | None:
    """epoch 秒转 ISO 格式"""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, UTC).isoformat()


def format_duration(ms: float) -> str:
    """格式化持续时间"""
    if ms < 1000:
        return f"{ms:.0f}ms"
    elif ms < 60000:
        return f"{ms/1000:.1f}s"
    elif ms < 3600000:
        return f"{ms/60000:.1f}m"
    else:
        return f"{ms/3600000:.1f}h"
