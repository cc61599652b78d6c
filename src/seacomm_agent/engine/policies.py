"""
策略模块

重试与调度策略。
"""

from dataclasses import dataclass


@dataclass
class RetryPolicy:
    """重试策略"""
    max_attempts: int = 3                 # 最大调度轮次（含首次）
    base_delay: float = 5.0               # 重试基础延迟（秒）

    def get_delay(self, attempts: int) -> float:
        """
        计算重试延迟

        Args:
            attempts: 已失败的轮次（>= 1）

        Returns:
            base * 2^(attempts-1)，不设上限
        """
        return self.base_delay * (2 ** max(attempts - 1, 0))

    def should_retry(self, attempts: int) -> bool:
        """是否还有重试机会"""
        return attempts < self.max_attempts


@dataclass
class DispatchPolicy:
    """调度策略"""
    drain_interval: float = 5.0           # 排空周期（秒）
    send_timeout: float = 30.0            # 单次发送超时（秒）
    max_concurrent_dispatches: int = 4    # 非 CRITICAL 并发上限
    stop_grace_period: float = 5.0        # 停止时等待在途调度的时间（秒）
