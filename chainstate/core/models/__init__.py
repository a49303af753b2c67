"""Record models for the discovery graph, work queue, sessions, and agents."""

from chainstate.core.models.agent import (
    TASK_CAPABILITIES,
    AgentCapability,
    AgentConfiguration,
    AgentPerformance,
    AgentSpecialization,
    AgentState,
    AgentStatus,
    CoordinationStatistics,
    DistributionStrategy,
)
from chainstate.core.models.entity import (
    DiscoveryMethod,
    EntityAnalysisData,
    EntityNode,
    EntityType,
    MetadataEntity,
    SummaryConfidence,
)
from chainstate.core.models.recovery import (
    EntityFilter,
    RecoveredContext,
    RecoveryStrategy,
    RecoveryStrategyType,
)
from chainstate.core.models.relationship import (
    DEFAULT_CRITICAL_RELATIONSHIPS,
    MetadataRelationship,
    RelationshipEdge,
    RelationshipType,
)
from chainstate.core.models.session import (
    BackupAnalysis,
    BackupMetadata,
    CheckpointData,
    DiscoveryPhase,
    DiscoverySession,
    GraphSnapshot,
    ProgressMetrics,
    SessionConfiguration,
    TimeRange,
    TokenThresholds,
    WorkQueueSnapshot,
)
from chainstate.core.models.work import (
    ChainStatus,
    DiscoveryChain,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)

__all__ = [
    "AgentCapability",
    "AgentConfiguration",
    "AgentPerformance",
    "AgentSpecialization",
    "AgentState",
    "AgentStatus",
    "BackupAnalysis",
    "BackupMetadata",
    "ChainStatus",
    "CheckpointData",
    "CoordinationStatistics",
    "DEFAULT_CRITICAL_RELATIONSHIPS",
    "DiscoveryChain",
    "DiscoveryMethod",
    "DiscoveryPhase",
    "DiscoverySession",
    "DistributionStrategy",
    "EntityAnalysisData",
    "EntityFilter",
    "EntityNode",
    "EntityType",
    "GraphSnapshot",
    "MetadataEntity",
    "MetadataRelationship",
    "ProgressMetrics",
    "RecoveredContext",
    "RecoveryStrategy",
    "RecoveryStrategyType",
    "RelationshipEdge",
    "RelationshipType",
    "SessionConfiguration",
    "SummaryConfidence",
    "TASK_CAPABILITIES",
    "TimeRange",
    "TokenThresholds",
    "WorkItem",
    "WorkItemStatus",
    "WorkItemType",
    "WorkQueueSnapshot",
]
