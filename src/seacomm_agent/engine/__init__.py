"""
引擎模块

负责消息排队、链路选择与调度。
"""

from seacomm_agent.engine.agent import CommunicationAgent, TransportStats
from seacomm_agent.engine.outbox import QueueStats, TransmissionQueue
from seacomm_agent.engine.policies import DispatchPolicy, RetryPolicy
from seacomm_agent.engine.selector import (
    ECONOMY_WEIGHTS,
    RELIABILITY_WEIGHTS,
    ProtocolSelector,
    ScoringWeights,
    select,
)
from seacomm_agent.engine.store import QueueStore

__all__ = [
    "CommunicationAgent",
    "TransportStats",
    "TransmissionQueue",
    "QueueStats",
    "QueueStore",
    "ProtocolSelector",
    "ScoringWeights",
    "ECONOMY_WEIGHTS",
    "RELIABILITY_WEIGHTS",
    "select",
    "RetryPolicy",
    "DispatchPolicy",
]
