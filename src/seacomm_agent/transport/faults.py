"""
链路故障模型

驱动不直接调用全局随机数，所有不确定性（连接失败、无确认、链路中断、
时延、信号强度）都通过注入的 FaultModel 产生。给定 seed 时行为可复现，
time_scale 用于缩放模拟等待（测试中通常为 0 或极小值）。
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any


@dataclass
class FaultModel:
    """故障注入模型"""

    connect_failure_rate: float = 0.0          # 每个建链步骤失败概率
    no_ack_rate: float = 0.0                   # 发送后无确认概率
    interrupt_rate: float = 0.0                # 发送中链路中断概率
    latency_ms: tuple[float, float] | None = None   # 覆盖介质默认时延范围
    signal_range: tuple[float, float] | None = None  # 覆盖介质默认信号范围（0-100）
    seed: int | None = None
    time_scale: float = 1.0                    # 模拟等待缩放（0 = 不等待）

    _rng: random.Random = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        for name in ("connect_failure_rate", "no_ack_rate", "interrupt_rate"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} 必须在 [0, 1] 之间: {value}")
        if self.time_scale < 0:
            raise ValueError(f"time_scale 不能为负: {self.time_scale}")
        if self.latency_ms is not None:
            self.latency_ms = (float(self.latency_ms[0]), float(self.latency_ms[1]))
        if self.signal_range is not None:
            self.signal_range = (float(self.signal_range[0]), float(self.signal_range[1]))
        self._rng = random.Random(self.seed)

    # ==================== 随机事件 ====================

    def roll(self, rate: float) -> bool:
        """以给定概率返回 True"""
        if rate <= 0:
            return False
        if rate >= 1:
            return True
        return self._rng.random() < rate

    def connect_fails(self) -> bool:
        return self.roll(self.connect_failure_rate)

    def no_ack(self) -> bool:
        return self.roll(self.no_ack_rate)

    def interrupted(self) -> bool:
        return self.roll(self.interrupt_rate)

    def uniform(self, low: float, high: float) -> float:
        return self._rng.uniform(low, high)

    def randint(self, low: int, high: int) -> int:
        return self._rng.randint(low, high)

    def latency(self, default: tuple[float, float]) -> float:
        """采样时延（毫秒）"""
        low, high = self.latency_ms or default
        return self._rng.uniform(low, high)

    def signal(self, default: tuple[float, float]) -> float:
        """采样信号质量（0-100）"""
        low, high = self.signal_range or default
        return max(0.0, min(100.0, self._rng.uniform(low, high)))

    # ==================== 模拟等待 ====================

    async def delay(self, ms: float) -> None:
        """按 time_scale 缩放后等待"""
        seconds = ms / 1000.0 * self.time_scale
        if seconds > 0:
            await asyncio.sleep(seconds)
        else:
            await asyncio.sleep(0)

    # ==================== 构造 ====================

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, time_scale: float | None = None) -> "FaultModel":
        """从配置字典创建（未知键忽略）"""
        data = dict(data or {})
        if time_scale is not None and "time_scale" not in data:
            data["time_scale"] = time_scale
        for key in ("latency_ms", "signal_range"):
            if data.get(key) is not None:
                data[key] = tuple(data[key])
        known = {
            "connect_failure_rate", "no_ack_rate", "interrupt_rate",
            "latency_ms", "signal_range", "seed", "time_scale",
        }
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return {
            "connect_failure_rate": self.connect_failure_rate,
            "no_ack_rate": self.no_ack_rate,
            "interrupt_rate": self.interrupt_rate,
            "latency_ms": list(self.latency_ms) if self.latency_ms else None,
            "signal_range": list(self.signal_range) if self.signal_range else None,
            "seed": self.seed,
            "time_scale": self.time_scale,
        }
