"""
压缩管线

- recommend: 按预估压缩率与速度打分，剔除违反硬约束（max_size / max_time_ms）的方法
- compress / decompress: 无损且互为逆运算；真实方法出错时回退到 none
- 帧格式: 1 字节方法标记 + 编码后负载
"""

import lzma
import math
import time
import zlib
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from seacomm_agent.domain.errors import CompressionError
from seacomm_agent.domain.models import CompressionResult, MethodChoice

FRAME_OVERHEAD = 1

# 速度等级得分
SPEED_SCORES = {
    "instant": 50.0,
    "very_fast": 40.0,
    "fast": 30.0,
    "medium": 20.0,
    "slow": 10.0,
}

_LZMA_FILTERS = [{"id": lzma.FILTER_LZMA1, "preset": 6, "dict_size": 1 << 16}]


@dataclass(frozen=True)
class MethodSpec:
    """压缩方法描述"""

    name: str
    tag: int                     # 帧标记字节
    estimated_ratio: float       # 预估压缩率（编码后 / 原始）
    speed: str                   # 速度等级
    overhead: int = 0            # 固定头部开销（字节）
    ms_per_kb: float = 0.0       # 预估耗时

    def estimate_size(self, size: int) -> int:
        if self.name == "none":
            return size
        return math.ceil(size * self.estimated_ratio) + self.overhead

    def estimate_time_ms(self, size: int) -> float:
        return size / 1024 * self.ms_per_kb


METHODS: dict[str, MethodSpec] = {
    "none": MethodSpec("none", 0x00, 1.0, "instant"),
    "zlib-fast": MethodSpec("zlib-fast", 0x01, 0.8, "very_fast", overhead=11, ms_per_kb=0.02),
    "zlib": MethodSpec("zlib", 0x02, 0.7, "fast", overhead=11, ms_per_kb=0.08),
    "lzma": MethodSpec("lzma", 0x03, 0.6, "slow", overhead=24, ms_per_kb=2.0),
}

_TAGS = {spec.tag: name for name, spec in METHODS.items()}


@dataclass
class CompressionConstraints:
    """压缩硬约束"""

    max_size: int | None = None          # 编码后负载上限（不含帧标记）
    max_time_ms: float | None = None     # 时间预算


@dataclass
class EncodedFrame:
    """按链路上限编码后的帧"""

    frame: bytes
    result: CompressionResult

    @property
    def method(self) -> str:
        return self.result.method


@dataclass
class CompressionStats:
    """压缩统计"""

    operations: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    total_ms: float = 0.0
    fallbacks: int = 0
    by_method: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        ratio = self.bytes_out / self.bytes_in if self.bytes_in else 1.0
        return {
            "operations": self.operations,
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            "bytes_saved": self.bytes_in - self.bytes_out,
            "average_ratio": round(ratio, 4),
            "average_ms": round(self.total_ms / self.operations, 4) if self.operations else 0.0,
            "fallbacks": self.fallbacks,
            "by_method": dict(self.by_method),
        }


def _encode(method: str, payload: bytes) -> bytes:
    if method == "none":
        return payload
    if method == "zlib-fast":
        return zlib.compress(payload, 1)
    if method == "zlib":
        return zlib.compress(payload, 9)
    if method == "lzma":
        return lzma.compress(payload, format=lzma.FORMAT_ALONE, filters=_LZMA_FILTERS)
    raise CompressionError(f"未知压缩方法: {method}", method=method)


def _decode(method: str, encoded: bytes) -> bytes:
    if method == "none":
        return encoded
    if method in ("zlib-fast", "zlib"):
        return zlib.decompress(encoded)
    if method == "lzma":
        return lzma.decompress(encoded, format=lzma.FORMAT_ALONE)
    raise CompressionError(f"未知压缩方法: {method}", method=method)


def pack_frame(method: str, encoded: bytes) -> bytes:
    """组帧：方法标记 + 负载"""
    spec = METHODS.get(method)
    if spec is None:
        raise CompressionError(f"未知压缩方法: {method}", method=method)
    return bytes([spec.tag]) + encoded


def unpack_frame(frame: bytes) -> tuple[str, bytes]:
    """拆帧，返回 (方法, 编码负载)"""
    if not frame:
        raise CompressionError("空帧")
    method = _TAGS.get(frame[0])
    if method is None:
        raise CompressionError(f"未知帧标记: 0x{frame[0]:02x}")
    return method, frame[FRAME_OVERHEAD:]


class CompressionPipeline:
    """压缩管线"""

    def __init__(self, max_time_ms: float | None = None):
        self._default_max_time_ms = max_time_ms
        self._stats = CompressionStats()

    @property
    def methods(self) -> list[str]:
        return list(METHODS)

    def recommend(
        self,
        payload_size: int,
        constraints: CompressionConstraints | None = None,
    ) -> MethodChoice:
        """
        推荐压缩方法

        Args:
            payload_size: 原始负载大小
            constraints: 硬约束，缺省时仅使用默认时间预算

        Returns:
            MethodChoice，candidates 为按得分排序的全部可行方法
        """
        constraints = constraints or CompressionConstraints(max_time_ms=self._default_max_time_ms)
        max_size = constraints.max_size
        max_time = constraints.max_time_ms

        scored: list[tuple[float, float, str, int]] = []
        for name, spec in METHODS.items():
            estimated = spec.estimate_size(payload_size)
            if max_size is not None and estimated > max_size:
                continue
            if max_time is not None and spec.estimate_time_ms(payload_size) > max_time:
                continue
            score = (1.0 - spec.estimated_ratio) * 50.0 + SPEED_SCORES[spec.speed]
            scored.append((score, spec.estimated_ratio, name, estimated))

        if not scored:
            return MethodChoice(
                method="none",
                fits=max_size is None or payload_size <= max_size,
                estimated_size=payload_size,
                candidates=[],
            )

        # 得分降序；同分时压缩率更好的优先
        scored.sort(key=lambda item: (-item[0], item[1]))
        best_score, _, best_name, best_size = scored[0]
        return MethodChoice(
            method=best_name,
            fits=True,
            estimated_size=best_size,
            score=best_score,
            candidates=[name for _, _, name, _ in scored],
        )

    def compress(self, payload: bytes, method: str) -> CompressionResult:
        """
        压缩

        真实方法出错时记录 CompressionError 并回退到 none。
        """
        if method not in METHODS:
            raise CompressionError(f"未知压缩方法: {method}", method=method)

        started = time.perf_counter()
        try:
            encoded = _encode(method, payload)
        except (zlib.error, lzma.LZMAError, MemoryError, ValueError) as e:
            error = CompressionError(f"{method} 压缩失败: {e}", method=method)
            logger.warning(f"{error.message}，回退到 none")
            self._stats.fallbacks += 1
            method = "none"
            encoded = payload
        elapsed_ms = (time.perf_counter() - started) * 1000

        self._stats.operations += 1
        self._stats.bytes_in += len(payload)
        self._stats.bytes_out += len(encoded)
        self._stats.total_ms += elapsed_ms
        self._stats.by_method[method] = self._stats.by_method.get(method, 0) + 1

        return CompressionResult(
            method=method,
            original_size=len(payload),
            encoded_size=len(encoded),
            elapsed_ms=elapsed_ms,
            encoded_payload=encoded,
        )

    def decompress(self, encoded: bytes, method: str) -> bytes:
        """解压"""
        try:
            return _decode(method, encoded)
        except CompressionError:
            raise
        except (zlib.error, lzma.LZMAError, ValueError, EOFError) as e:
            raise CompressionError(f"{method} 解压失败: {e}", method=method) from e

    def decode_frame(self, frame: bytes) -> bytes:
        """拆帧并解压"""
        method, encoded = unpack_frame(frame)
        return self.decompress(encoded, method)

    def compress_batch(self, payloads: list[bytes], method: str | None = None) -> dict[str, Any]:
        """
        批量压缩

        Args:
            payloads: 原始负载列表
            method: 指定方法，缺省时逐条按 recommend 选择

        Returns:
            {"total", "results", "stats"}，results 与输入一一对应
        """
        if method is not None and method not in METHODS:
            raise CompressionError(f"未知压缩方法: {method}", method=method)

        results: list[CompressionResult] = []
        original = encoded = 0
        elapsed = 0.0
        for payload in payloads:
            chosen = method or self.recommend(len(payload)).method
            result = self.compress(payload, chosen)
            results.append(result)
            original += result.original_size
            encoded += result.encoded_size
            elapsed += result.elapsed_ms

        return {
            "total": len(payloads),
            "results": results,
            "stats": {
                "original_size": original,
                "encoded_size": encoded,
                "bytes_saved": original - encoded,
                "average_ratio": round(encoded / original, 4) if original else 1.0,
                "elapsed_ms": round(elapsed, 4),
            },
        }

    def encode_for(
        self,
        payload: bytes,
        max_frame_bytes: int,
        cache: dict[str, CompressionResult] | None = None,
    ) -> EncodedFrame | None:
        """
        按链路帧上限编码

        依次尝试推荐的候选方法，首个实际大小满足上限的方法胜出；
        预估全部落空时再按压缩率尝试其余未超时间预算的方法。

        Args:
            payload: 原始负载
            max_frame_bytes: 链路单帧上限（含帧标记）
            cache: 方法 -> 压缩结果缓存（同一消息多次尝试时复用）

        Returns:
            编码后的帧，无法满足上限时返回 None
        """
        limit = max_frame_bytes - FRAME_OVERHEAD
        if limit < 0:
            return None

        choice = self.recommend(
            len(payload),
            CompressionConstraints(max_size=limit, max_time_ms=self._default_max_time_ms),
        )
        order = list(choice.candidates)
        # 预估大小落空的方法仍可实测；超出时间预算的方法始终排除
        max_time = self._default_max_time_ms
        remaining = sorted(
            (
                name
                for name, spec in METHODS.items()
                if name not in order
                and name != "none"
                and (max_time is None or spec.estimate_time_ms(len(payload)) <= max_time)
            ),
            key=lambda name: METHODS[name].estimated_ratio,
        )
        order.extend(remaining)

        for method in order:
            result = cache.get(method) if cache is not None else None
            if result is None:
                result = self.compress(payload, method)
                if cache is not None:
                    cache[method] = result
                    # 回退时结果方法与请求方法不同
                    cache.setdefault(result.method, result)
            if result.encoded_size <= limit:
                return EncodedFrame(pack_frame(result.method, result.encoded_payload), result)

        return None

    def get_stats(self) -> dict[str, Any]:
        return self._stats.to_dict()

    def reset_stats(self) -> None:
        self._stats = CompressionStats()
