"""
传感器数据有损预处理

只在调用方显式要求时执行，压缩管线本身从不调用。
"""

from collections.abc import Iterable
from typing import Any

from seacomm_agent.utils import json

DEFAULT_KEY_MAP = {
    "temperature": "t",
    "ph": "p",
    "oxygen": "o",
    "salinity": "s",
    "timestamp": "ts",
    "location": "loc",
    "latitude": "lat",
    "longitude": "lng",
    "device_id": "dev",
    "deviceId": "dev",
}


def drop_nulls(data: Any) -> Any:
    """递归去除值为 None 的字段"""
    if isinstance(data, list):
        return [drop_nulls(item) for item in data]
    if isinstance(data, dict):
        return {k: drop_nulls(v) for k, v in data.items() if v is not None}
    return data


def shorten_keys(data: Any, key_map: dict[str, str] | None = None) -> Any:
    """按映射缩短字段名"""
    key_map = DEFAULT_KEY_MAP if key_map is None else key_map
    if isinstance(data, list):
        return [shorten_keys(item, key_map) for item in data]
    if isinstance(data, dict):
        return {key_map.get(k, k): shorten_keys(v, key_map) for k, v in data.items()}
    return data


def reduce_precision(data: Any, digits: int = 2) -> Any:
    """浮点数保留指定小数位"""
    if isinstance(data, list):
        return [reduce_precision(item, digits) for item in data]
    if isinstance(data, dict):
        return {k: reduce_precision(v, digits) for k, v in data.items()}
    if isinstance(data, float):
        return round(data, digits)
    return data


STEPS = {
    "drop_nulls": drop_nulls,
    "shorten_keys": shorten_keys,
    "reduce_precision": reduce_precision,
}


def preprocess(
    data: Any,
    steps: Iterable[str] = ("drop_nulls", "shorten_keys", "reduce_precision"),
    digits: int = 2,
    key_map: dict[str, str] | None = None,
) -> bytes:
    """
    依次执行命名的预处理步骤并序列化为 JSON 字节

    Args:
        data: 传感器读数（dict / list）
        steps: 步骤名称序列
        digits: reduce_precision 保留的小数位
        key_map: shorten_keys 使用的映射

    Returns:
        UTF-8 JSON 字节
    """
    processed = data
    for step in steps:
        if step == "reduce_precision":
            processed = reduce_precision(processed, digits)
        elif step == "shorten_keys":
            processed = shorten_keys(processed, key_map)
        elif step in STEPS:
            processed = STEPS[step](processed)
        else:
            raise ValueError(f"未知预处理步骤: {step}")
    return json.dumps(processed).encode("utf-8")
