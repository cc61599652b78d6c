"""
链路选择器

无状态：输入为注册表快照与消息优先级，输出调度计划。

- 过滤：状态为 READY / DEGRADED 且信号不低于该链路的下限
- LOW / NORMAL：经济档，偏好低成本、低时延
- HIGH：可靠档，偏好信号与成功率，忽略成本
- CRITICAL：全部可用链路并发广播
- DEGRADED 链路得分减半，同分按名称排序
"""

from collections.abc import Iterable
from dataclasses import dataclass

from seacomm_agent.domain.enums import ConnectionState, DispatchMode, Priority
from seacomm_agent.domain.models import SelectionPlan, TransportSnapshot

COST_SCALE = 10000.0            # cost_per_byte * COST_SCALE = 1 时成本得分为 50
LATENCY_SCALE_MS = 1000.0       # 时延为 1 秒时时延得分为 50
UNKNOWN_SIGNAL_SCORE = 50.0


@dataclass(frozen=True)
class ScoringWeights:
    """打分权重"""

    cost: float = 0.0
    latency: float = 0.0
    signal: float = 0.0
    reliability: float = 0.0


ECONOMY_WEIGHTS = ScoringWeights(cost=0.45, latency=0.35, signal=0.20)
RELIABILITY_WEIGHTS = ScoringWeights(signal=0.45, reliability=0.35, latency=0.20)
DEGRADED_PENALTY = 0.5


def cost_score(snapshot: TransportSnapshot) -> float:
    return 100.0 / (1.0 + max(snapshot.cost_per_byte, 0.0) * COST_SCALE)


def latency_score(snapshot: TransportSnapshot) -> float:
    return 100.0 / (1.0 + max(snapshot.typical_latency_ms, 0.0) / LATENCY_SCALE_MS)


def signal_score(snapshot: TransportSnapshot) -> float:
    if snapshot.signal_quality is None:
        return UNKNOWN_SIGNAL_SCORE
    return max(0.0, min(100.0, snapshot.signal_quality))


def reliability_score(snapshot: TransportSnapshot) -> float:
    return max(0.0, min(1.0, snapshot.success_rate)) * 100.0


class ProtocolSelector:
    """链路选择器"""

    def __init__(
        self,
        economy: ScoringWeights = ECONOMY_WEIGHTS,
        reliability: ScoringWeights = RELIABILITY_WEIGHTS,
        degraded_penalty: float = DEGRADED_PENALTY,
    ):
        self._economy = economy
        self._reliability = reliability
        self._degraded_penalty = degraded_penalty

    def weights_for(self, priority: Priority) -> ScoringWeights:
        if priority in (Priority.LOW, Priority.NORMAL):
            return self._economy
        return self._reliability

    def score(self, snapshot: TransportSnapshot, weights: ScoringWeights) -> float:
        value = (
            weights.cost * cost_score(snapshot)
            + weights.latency * latency_score(snapshot)
            + weights.signal * signal_score(snapshot)
            + weights.reliability * reliability_score(snapshot)
        )
        if snapshot.connection_state == ConnectionState.DEGRADED:
            value *= self._degraded_penalty
        return value

    def select(
        self,
        snapshots: Iterable[TransportSnapshot],
        priority: Priority,
    ) -> SelectionPlan:
        """
        生成调度计划

        Args:
            snapshots: 链路快照
            priority: 消息优先级

        Returns:
            SEQUENTIAL（有序候选）/ BROADCAST（全部可用）/ NONE
        """
        usable = [s for s in snapshots if s.usable]
        if not usable:
            return SelectionPlan(mode=DispatchMode.NONE, reason="no transport available")

        weights = self.weights_for(priority)
        scores = {s.name: round(self.score(s, weights), 4) for s in usable}
        ordered = sorted(usable, key=lambda s: (-scores[s.name], s.name))
        names = [s.name for s in ordered]

        mode = DispatchMode.BROADCAST if priority == Priority.CRITICAL else DispatchMode.SEQUENTIAL
        return SelectionPlan(mode=mode, transports=names, scores=scores)


_default_selector = ProtocolSelector()


def select(snapshots: Iterable[TransportSnapshot], priority: Priority) -> SelectionPlan:
    """使用默认权重选择链路"""
    return _default_selector.select(snapshots, priority)
