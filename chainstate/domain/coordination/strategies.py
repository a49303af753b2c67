"""
Task distribution strategies.

A strategy turns the pending queue and the registered agents into an
assignment plan. Strategies never touch storage; the coordinator applies
the plan. Each slot tracks the tasks planned during the current pass so
capacity and load stay accurate while a plan is being built.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import groupby
from typing import Callable

from chainstate.core.models import (
    TASK_CAPABILITIES,
    AgentCapability,
    AgentConfiguration,
    AgentSpecialization,
    AgentState,
    AgentStatus,
    DistributionStrategy,
    WorkItem,
)

CAPABILITY_SCORE = 100
SPECIALIZATION_SCORE = 50
EXPERIENCE_WEIGHT = 30
LOAD_PENALTY = 25

# Checked in order; the first keyword hit wins
SPECIALIZATION_KEYWORDS: list[tuple[tuple[str, ...], AgentSpecialization]] = [
    (("component", "ui", "frontend"), AgentSpecialization.FRONTEND_COMPONENTS),
    (("service", "api", "controller"), AgentSpecialization.BACKEND_SERVICES),
    (("entity", "model", "repository"), AgentSpecialization.DATABASE_ENTITIES),
    (("endpoint", "route"), AgentSpecialization.API_ENDPOINTS),
    (("config", "setting"), AgentSpecialization.CONFIGURATION),
    (("test", "spec"), AgentSpecialization.TESTING),
]

UNAVAILABLE_STATES = (AgentState.DISCONNECTED, AgentState.ERROR)


@dataclass
class AgentSlot:
    """An agent as seen by a strategy during one distribution pass."""

    config: AgentConfiguration
    status: AgentStatus
    planned: int = 0

    @property
    def agent_id(self) -> str:
        return self.config.agent_id

    @property
    def active_tasks(self) -> int:
        return len(self.status.current_tasks) + self.planned

    @property
    def has_capacity(self) -> bool:
        return (
            self.status.status not in UNAVAILABLE_STATES
            and self.active_tasks < self.config.max_concurrent_tasks
        )

    @property
    def load(self) -> float:
        return self.active_tasks / self.config.max_concurrent_tasks


@dataclass
class DistributionOptions:
    consider_experience: bool = True
    balance_load: bool = True
    # Round-robin position carried across passes
    cursor: int = 0


@dataclass
class Plan:
    assignments: list[tuple[WorkItem, str]] = field(default_factory=list)

    def assign(self, task: WorkItem, slot: AgentSlot) -> None:
        slot.planned += 1
        self.assignments.append((task, slot.agent_id))


PlanFunction = Callable[[list[WorkItem], list[AgentSlot], DistributionOptions], Plan]


# ============================================================================
# Scoring
# ============================================================================


def required_capability(task: WorkItem) -> AgentCapability:
    return TASK_CAPABILITIES.get(task.task_type, AgentCapability.ENTITY_DISCOVERY)


def infer_specialization(entity_id: str) -> AgentSpecialization:
    """Guess the domain of a task from keywords in its entity id."""
    lowered = entity_id.lower()
    for keywords, specialization in SPECIALIZATION_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return specialization
    return AgentSpecialization.GENERIC


def score_agent(task: WorkItem, slot: AgentSlot, options: DistributionOptions) -> float:
    score = 0.0
    if required_capability(task) in slot.config.capabilities:
        score += CAPABILITY_SCORE
    if slot.config.specialization == infer_specialization(task.entity_id):
        score += SPECIALIZATION_SCORE
    if options.consider_experience:
        performance = slot.status.performance
        score += performance.success_rate * EXPERIENCE_WEIGHT - performance.average_task_duration
    if options.balance_load:
        score -= slot.load * LOAD_PENALTY
    return score


# ============================================================================
# Strategies
# ============================================================================


def plan_by_capability(
    tasks: list[WorkItem],
    slots: list[AgentSlot],
    options: DistributionOptions,
) -> Plan:
    plan = Plan()
    for task in tasks:
        best: AgentSlot | None = None
        best_score = 0.0
        for slot in slots:
            if not slot.has_capacity:
                continue
            score = score_agent(task, slot, options)
            # Strict comparison keeps the first-registered agent on ties
            if best is None or score > best_score:
                best, best_score = slot, score
        if best is not None:
            plan.assign(task, best)
    return plan


def plan_by_load(
    tasks: list[WorkItem],
    slots: list[AgentSlot],
    options: DistributionOptions,
) -> Plan:
    plan = Plan()
    for task in tasks:
        ready = sorted((s for s in slots if s.has_capacity), key=lambda s: s.load)
        if not ready:
            break
        plan.assign(task, ready[0])
    return plan


def plan_by_priority(
    tasks: list[WorkItem],
    slots: list[AgentSlot],
    options: DistributionOptions,
) -> Plan:
    plan = Plan()
    ordered = sorted(tasks, key=lambda t: t.priority)
    for _, band in groupby(ordered, key=lambda t: t.priority):
        for task in band:
            slot = next((s for s in slots if s.has_capacity), None)
            if slot is None:
                return plan
            plan.assign(task, slot)
    return plan


def plan_round_robin(
    tasks: list[WorkItem],
    slots: list[AgentSlot],
    options: DistributionOptions,
) -> Plan:
    plan = Plan()
    if not slots:
        return plan
    for task in tasks:
        for _ in range(len(slots)):
            slot = slots[options.cursor % len(slots)]
            options.cursor = (options.cursor + 1) % len(slots)
            if slot.has_capacity:
                plan.assign(task, slot)
                break
        else:
            # A full cycle found nobody with room
            break
    return plan


STRATEGIES: dict[DistributionStrategy, PlanFunction] = {
    DistributionStrategy.CAPABILITY_BASED: plan_by_capability,
    DistributionStrategy.LOAD_BALANCED: plan_by_load,
    DistributionStrategy.PRIORITY_WEIGHTED: plan_by_priority,
    DistributionStrategy.ROUND_ROBIN: plan_round_robin,
}


def build_plan(
    strategy: DistributionStrategy,
    tasks: list[WorkItem],
    slots: list[AgentSlot],
    options: DistributionOptions,
) -> Plan:
    return STRATEGIES[strategy](tasks, slots, options)
