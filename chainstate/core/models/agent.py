"""
Agent models for the task coordinator.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from chainstate.core.models.work import WorkItemType


class AgentCapability(str, Enum):
    ENTITY_DISCOVERY = "entity_discovery"
    RELATIONSHIP_MAPPING = "relationship_mapping"
    SEMANTIC_ANALYSIS = "semantic_analysis"
    DEPENDENCY_TRACING = "dependency_tracing"
    VALIDATION = "validation"
    REPORTING = "reporting"
    CROSS_REFERENCE = "cross_reference"


class AgentSpecialization(str, Enum):
    FRONTEND_COMPONENTS = "frontend_components"
    BACKEND_SERVICES = "backend_services"
    DATABASE_ENTITIES = "database_entities"
    API_ENDPOINTS = "api_endpoints"
    CONFIGURATION = "configuration"
    TESTING = "testing"
    GENERIC = "generic"


class AgentState(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class DistributionStrategy(str, Enum):
    CAPABILITY_BASED = "capability_based"
    LOAD_BALANCED = "load_balanced"
    PRIORITY_WEIGHTED = "priority_weighted"
    ROUND_ROBIN = "round_robin"


TASK_CAPABILITIES: dict[WorkItemType, AgentCapability] = {
    WorkItemType.DISCOVER_ENTITY: AgentCapability.ENTITY_DISCOVERY,
    WorkItemType.ANALYZE_ENTITY: AgentCapability.SEMANTIC_ANALYSIS,
    WorkItemType.FIND_USAGES: AgentCapability.DEPENDENCY_TRACING,
    WorkItemType.MAP_RELATIONSHIPS: AgentCapability.RELATIONSHIP_MAPPING,
    WorkItemType.VALIDATE_CHAIN: AgentCapability.VALIDATION,
    WorkItemType.GENERATE_SUMMARY: AgentCapability.REPORTING,
    WorkItemType.CROSS_REFERENCE: AgentCapability.CROSS_REFERENCE,
}


class AgentConfiguration(BaseModel):
    agent_id: str
    capabilities: list[AgentCapability] = Field(default_factory=list)
    specialization: AgentSpecialization = AgentSpecialization.GENERIC
    max_concurrent_tasks: int = Field(default=2, ge=1)
    priority: int = Field(default=3, ge=1, le=5)


class AgentPerformance(BaseModel):
    average_task_duration: float = Field(default=0.0, description="Seconds")
    success_rate: float = 1.0
    throughput: float = Field(default=0.0, description="Completed tasks per second")


class AgentStatus(BaseModel):
    """Live bookkeeping for one registered agent."""

    agent_id: str
    status: AgentState = AgentState.AVAILABLE
    current_tasks: list[str] = Field(default_factory=list)
    completed_tasks: int = 0
    failed_tasks: int = 0
    last_heartbeat: datetime = Field(default_factory=lambda: datetime.now(UTC))
    performance: AgentPerformance = Field(default_factory=AgentPerformance)

    @property
    def total_tasks(self) -> int:
        return self.completed_tasks + self.failed_tasks


class CoordinationStatistics(BaseModel):
    total_agents: int = 0
    active_agents: int = 0
    pending_tasks: int = 0
    in_flight_tasks: int = 0
    tasks_distributed: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    average_completion_time: float = Field(default=0.0, description="Seconds")
    average_load: float = 0.0
    parallelism_efficiency: float = 0.0
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
