"""
链路重连退避

断链后的重新建链按指数退避进行，带抖动防止多条链路同时重试。
"""

import random
from dataclasses import dataclass
from typing import Any


@dataclass
class ReconnectConfig:
    """重连配置"""

    initial_backoff: float = 1.0           # 初始退避时间（秒）
    max_backoff: float = 300.0             # 最大退避时间（秒）
    backoff_multiplier: float = 2.0        # 退避乘数
    jitter_factor: float = 0.1             # 抖动因子（0-1）
    max_attempts: int = 0                  # 最大重试次数（0 = 无限）

    health_check_interval: float = 30.0    # 健康检查间隔（秒）
    health_check_timeout: float = 5.0      # 健康检查超时（秒）

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ReconnectConfig":
        data = data or {}
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class ReconnectStats:
    """单条链路的重连统计"""

    total_reconnects: int = 0
    successful_reconnects: int = 0
    failed_reconnects: int = 0
    current_attempt: int = 0
    current_backoff: float = 0.0
    last_failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_reconnects": self.total_reconnects,
            "successful_reconnects": self.successful_reconnects,
            "failed_reconnects": self.failed_reconnects,
            "current_attempt": self.current_attempt,
            "current_backoff": round(self.current_backoff, 3),
            "last_failure_reason": self.last_failure_reason,
        }


class ExponentialBackoff:
    """
    指数退避计算器

    独立的退避计算工具类。
    """

    def __init__(
        self,
        initial: float = 1.0,
        maximum: float = 60.0,
        multiplier: float = 2.0,
        jitter: float = 0.1,
        rng: random.Random | None = None,
    ):
        self._initial = initial
        self._maximum = maximum
        self._multiplier = multiplier
        self._jitter = jitter
        self._rng = rng or random.Random()
        self._current = initial
        self._attempt = 0

    @classmethod
    def from_config(cls, config: ReconnectConfig, rng: random.Random | None = None) -> "ExponentialBackoff":
        return cls(
            initial=config.initial_backoff,
            maximum=config.max_backoff,
            multiplier=config.backoff_multiplier,
            jitter=config.jitter_factor,
            rng=rng,
        )

    def next_backoff(self) -> float:
        """获取下一个退避时间"""
        backoff = self._current

        if self._jitter > 0:
            jitter_amount = backoff * self._jitter
            backoff += self._rng.uniform(-jitter_amount, jitter_amount)

        self._current = min(self._current * self._multiplier, self._maximum)
        self._attempt += 1

        return max(0.0, min(backoff, self._maximum))

    def reset(self) -> None:
        """重置退避"""
        self._current = self._initial
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """当前尝试次数"""
        return self._attempt

    @property
    def current(self) -> float:
        """当前退避时间"""
        return self._current
