"""Multi-agent task distribution and heartbeat monitoring."""

from chainstate.domain.coordination.coordinator import TaskCoordinator
from chainstate.domain.coordination.heartbeat import HeartbeatMonitor
from chainstate.domain.coordination.strategies import (
    AgentSlot,
    DistributionOptions,
    build_plan,
    infer_specialization,
    score_agent,
)

__all__ = [
    "AgentSlot",
    "DistributionOptions",
    "HeartbeatMonitor",
    "TaskCoordinator",
    "build_plan",
    "infer_specialization",
    "score_agent",
]
