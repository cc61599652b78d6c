"""
JSON 工具
"""

from enum import Enum
from typing import Any

import ujson


def dumps(obj: Any, **kwargs) -> str:
    """安全的 JSON 序列化"""
    return ujson.dumps(_prepare(obj), ensure_ascii=False, **kwargs)


def loads(s: str | bytes) -> Any:
    """JSON 反序列化"""
    return ujson.loads(s)


def _prepare(obj: Any) -> Any:
    """把枚举、带 to_dict 的对象等转换为 ujson 可处理的结构"""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {str(k.value if isinstance(k, Enum) else k): _prepare(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_prepare(v) for v in obj]
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    if hasattr(obj, "to_dict"):
        return _prepare(obj.to_dict())
    return obj
