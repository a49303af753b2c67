"""
Session, checkpoint, and backup models.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from chainstate.utils.ids import generate_checkpoint_id, generate_session_id

MAX_TASK_DESCRIPTION_LENGTH = 1000


class DiscoveryPhase(str, Enum):
    DISCOVERY = "discovery"
    ANALYSIS = "analysis"
    PLANNING = "planning"
    EXECUTION = "execution"


# ============================================================================
# Session
# ============================================================================


class TokenThresholds(BaseModel):
    """Fractions of the token budget at which each band begins."""

    max_tokens: int = Field(default=128_000, gt=0)
    warning: float = Field(default=0.8, gt=0, le=1)
    compression_trigger: float = Field(default=0.9, gt=0, le=1)
    emergency: float = Field(default=0.95, gt=0, le=1)
    cache_eviction: float = Field(default=0.8, gt=0, le=1)


class SessionConfiguration(BaseModel):
    """Configuration snapshot stored with a session."""

    max_entity_cache_size: int = 10_000
    auto_save_interval: int = Field(default=30, description="Seconds")
    enable_debug_logging: bool = False
    checkpoint_frequency: int = Field(default=10, description="Checkpoint every N processed entities")
    parallel_processing: bool = True
    token_management: TokenThresholds = Field(default_factory=TokenThresholds)


class ProgressMetrics(BaseModel):
    total_entities_discovered: int = 0
    entities_processed: int = 0
    chains_identified: int = 0
    chains_completed: int = 0
    current_priority_level: int = 1
    estimated_time_remaining: float | None = Field(default=None, description="Minutes")
    last_update_timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DiscoverySession(BaseModel):
    """One discovery effort; superseded, never deleted."""

    session_id: str = Field(default_factory=generate_session_id)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    task_description: str
    workspace_root: str = ""
    current_phase: DiscoveryPhase = DiscoveryPhase.DISCOVERY
    progress: ProgressMetrics = Field(default_factory=ProgressMetrics)
    ai_model: str = ""
    configuration: SessionConfiguration = Field(default_factory=SessionConfiguration)

    @field_validator("task_description")
    @classmethod
    def _check_description(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("task_description must not be empty")
        if len(value) > MAX_TASK_DESCRIPTION_LENGTH:
            raise ValueError(
                f"task_description exceeds {MAX_TASK_DESCRIPTION_LENGTH} characters"
            )
        return value


# ============================================================================
# Checkpoints
# ============================================================================


class GraphSnapshot(BaseModel):
    node_count: int = 0
    edge_count: int = 0
    last_processed_entity: str | None = None


class WorkQueueSnapshot(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class CheckpointData(BaseModel):
    """Point-in-time session snapshot used for recovery."""

    checkpoint_id: str = Field(default_factory=generate_checkpoint_id)
    session_id: str
    phase: DiscoveryPhase = DiscoveryPhase.DISCOVERY
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    progress_snapshot: ProgressMetrics = Field(default_factory=ProgressMetrics)
    entity_graph_snapshot: GraphSnapshot = Field(default_factory=GraphSnapshot)
    work_queue_snapshot: WorkQueueSnapshot = Field(default_factory=WorkQueueSnapshot)
    chain_status_snapshot: dict[str, str] = Field(default_factory=dict)
    context_summary: str = ""
    next_actions: list[str] = Field(default_factory=list)
    critical_dependencies: list[str] = Field(default_factory=list)
    known_issues: list[str] = Field(default_factory=list)
    recovery_instructions: str = ""


# ============================================================================
# Backups
# ============================================================================


class BackupMetadata(BaseModel):
    """Summary of one context backup file."""

    file_path: str
    session_id: str
    timestamp: datetime
    total_entities: int = 0
    total_relationships: int = 0
    entity_types: dict[str, int] = Field(default_factory=dict)
    estimated_tokens: int = 0
    file_size: int = 0


class TimeRange(BaseModel):
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class BackupAnalysis(BaseModel):
    available_backups: list[BackupMetadata] = Field(default_factory=list)
    total_files: int = 0
    total_entities: int = 0
    total_relationships: int = 0
    entity_distribution: dict[str, int] = Field(default_factory=dict)
    time_range: TimeRange | None = None
    estimated_total_tokens: int = 0
    recommendations: list[str] = Field(default_factory=list)


def snapshot_counts(data: dict[str, Any]) -> WorkQueueSnapshot:
    """Build a queue snapshot from ``get_work_queue_stats`` output."""
    return WorkQueueSnapshot(
        pending=data.get("pending", 0),
        processing=data.get("processing", 0),
        completed=data.get("completed", 0),
        failed=data.get("failed", 0),
    )
