"""
Work queue and discovery chain models.

Both ``WorkItem`` and ``DiscoveryChain`` carry a status governed by a
transition table; the graph store rejects transitions not listed here.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from chainstate.utils.ids import generate_work_item_id


# ============================================================================
# Work Items
# ============================================================================


class WorkItemType(str, Enum):
    DISCOVER_ENTITY = "discover_entity"
    ANALYZE_ENTITY = "analyze_entity"
    FIND_USAGES = "find_usages"
    MAP_RELATIONSHIPS = "map_relationships"
    VALIDATE_CHAIN = "validate_chain"
    GENERATE_SUMMARY = "generate_summary"
    CROSS_REFERENCE = "cross_reference"


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    CANCELLED = "cancelled"


WORK_ITEM_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.PENDING: frozenset({
        WorkItemStatus.ASSIGNED,
        WorkItemStatus.IN_PROGRESS,
        WorkItemStatus.BLOCKED,
        WorkItemStatus.DEFERRED,
        WorkItemStatus.CANCELLED,
    }),
    WorkItemStatus.ASSIGNED: frozenset({
        WorkItemStatus.IN_PROGRESS,
        WorkItemStatus.PENDING,
        WorkItemStatus.COMPLETED,
        WorkItemStatus.FAILED,
        WorkItemStatus.CANCELLED,
    }),
    WorkItemStatus.IN_PROGRESS: frozenset({
        WorkItemStatus.COMPLETED,
        WorkItemStatus.FAILED,
        WorkItemStatus.PENDING,
        WorkItemStatus.BLOCKED,
        WorkItemStatus.CANCELLED,
    }),
    WorkItemStatus.FAILED: frozenset({WorkItemStatus.PENDING, WorkItemStatus.CANCELLED}),
    WorkItemStatus.BLOCKED: frozenset({WorkItemStatus.PENDING, WorkItemStatus.CANCELLED}),
    WorkItemStatus.DEFERRED: frozenset({WorkItemStatus.PENDING, WorkItemStatus.CANCELLED}),
    WorkItemStatus.COMPLETED: frozenset(),
    WorkItemStatus.CANCELLED: frozenset(),
}


class WorkItem(BaseModel):
    """A unit of pending analysis work tied to one entity."""

    id: str = Field(default_factory=generate_work_item_id)
    entity_id: str
    task_type: WorkItemType
    priority: int = Field(default=3, ge=1, le=5)
    status: WorkItemStatus = WorkItemStatus.PENDING
    assigned_agent: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    chain_context: str = ""
    estimated_effort: int | None = Field(default=None, description="Minutes")
    actual_effort: int | None = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    error_message: str | None = None

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries


def can_transition_work_item(current: WorkItemStatus, target: WorkItemStatus) -> bool:
    return current == target or target in WORK_ITEM_TRANSITIONS[current]


# ============================================================================
# Discovery Chains
# ============================================================================


class ChainStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    PARTIAL = "partial"
    BLOCKED = "blocked"
    FAILED = "failed"
    DEFERRED = "deferred"


CHAIN_TRANSITIONS: dict[ChainStatus, frozenset[ChainStatus]] = {
    ChainStatus.PENDING: frozenset({ChainStatus.IN_PROGRESS, ChainStatus.BLOCKED, ChainStatus.DEFERRED}),
    ChainStatus.IN_PROGRESS: frozenset({
        ChainStatus.COMPLETE,
        ChainStatus.PARTIAL,
        ChainStatus.BLOCKED,
        ChainStatus.FAILED,
        ChainStatus.DEFERRED,
    }),
    ChainStatus.PARTIAL: frozenset({ChainStatus.IN_PROGRESS, ChainStatus.COMPLETE, ChainStatus.BLOCKED}),
    ChainStatus.BLOCKED: frozenset({ChainStatus.PENDING, ChainStatus.IN_PROGRESS}),
    ChainStatus.DEFERRED: frozenset({ChainStatus.PENDING, ChainStatus.IN_PROGRESS}),
    ChainStatus.FAILED: frozenset({ChainStatus.PENDING}),
    ChainStatus.COMPLETE: frozenset({ChainStatus.PARTIAL}),
}


def can_transition_chain(current: ChainStatus, target: ChainStatus) -> bool:
    return current == target or target in CHAIN_TRANSITIONS[current]


class DiscoveryChain(BaseModel):
    """An ordered path of entity ids representing a dependency sequence."""

    id: str
    name: str
    description: str = ""
    start_entity_id: str | None = None
    end_entity_ids: list[str] = Field(default_factory=list)
    chain_path: list[str] = Field(default_factory=list)
    completion_status: ChainStatus = ChainStatus.PENDING
    missing_links: list[str] = Field(default_factory=list)
    priority: int = Field(default=3, ge=1, le=5)
    estimated_complexity: str = "medium"
    blocked_by: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
