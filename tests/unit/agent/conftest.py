"""
Agent 单元测试公共设施
"""

import pytest

from seacomm_agent.transport.faults import FaultModel


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def quiet_faults(seed: int = 7, **kwargs) -> FaultModel:
    """不等待、可复现的故障模型"""
    kwargs.setdefault("time_scale", 0.0)
    return FaultModel(seed=seed, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue_dir(tmp_path):
    return tmp_path / "queue"
