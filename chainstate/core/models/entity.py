"""
Entity models for chainstate.

An ``EntityNode`` is a discovered code unit (controller, service, component,
...) tracked as a node in the discovery graph. Its ``dependencies`` and
``dependents`` lists are append-only id sets kept symmetric by the
relationship-add path of the graph store.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chainstate.utils.ids import is_valid_record_id


# ============================================================================
# Enums
# ============================================================================


class EntityType(str, Enum):
    """Closed classification of discovered code units."""
    CONTROLLER = "Controller"
    SERVICE = "Service"
    COMPONENT = "Component"
    INTERFACE = "Interface"
    REPOSITORY = "Repository"
    MODEL = "Model"
    ENTITY = "Entity"
    DTO = "DTO"
    ENUM = "Enum"
    MODULE = "Module"
    CLASS = "Class"
    FUNCTION = "Function"
    HOOK = "Hook"
    ROUTE = "Route"
    ENDPOINT = "Endpoint"
    MIDDLEWARE = "Middleware"
    VALIDATOR = "Validator"
    HANDLER = "Handler"
    EVENT = "Event"
    CONFIGURATION = "Configuration"
    MIGRATION = "Migration"
    TEST = "Test"
    UTILITY = "Utility"
    UNKNOWN = "Unknown"


class DiscoveryMethod(str, Enum):
    """How an entity or relationship was found."""
    SEMANTIC_SEARCH = "semantic_search"
    LIST_CODE_USAGES = "list_code_usages"
    GREP_SEARCH = "grep_search"
    FILE_SEARCH = "file_search"
    MANUAL = "manual"
    INFERENCE = "inference"


class SummaryConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ============================================================================
# Entity Model
# ============================================================================


class EntityAnalysisData(BaseModel):
    """Optional analysis payload attached to an entity."""

    usage_count: int | None = None
    relevance_score: float | None = Field(
        default=None,
        description="Higher is more relevant; compression drops low scores first",
    )
    is_summarized: bool = False
    summary_confidence: SummaryConfidence | None = None
    architectural_pattern: str | None = None
    inheritance_chain: list[str] = Field(default_factory=list)
    members: list[str] = Field(default_factory=list)
    business_rules: list[str] = Field(default_factory=list)
    integration_points: list[str] = Field(default_factory=list)
    testable_units: list[str] = Field(default_factory=list)


class EntityNode(BaseModel):
    """A discovered code entity."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., description="Caller-assigned, stable for the session")
    type: EntityType
    file_path: str
    discovery_method: DiscoveryMethod = DiscoveryMethod.MANUAL
    priority: int = Field(default=3, ge=1, le=5)
    processed: bool = False

    business_context: str = ""
    chain_context: str = ""
    domain_context: str = ""

    dependencies: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)

    analysis_data: EntityAnalysisData | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    processing_agent: str | None = None

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not is_valid_record_id(value):
            raise ValueError(f"invalid entity id: {value!r}")
        return value

    @field_validator("file_path")
    @classmethod
    def _check_file_path(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("file_path is required")
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        # Accept case-insensitive names; unknown labels collapse to UNKNOWN
        if isinstance(value, str) and not isinstance(value, EntityType):
            for member in EntityType:
                if member.value.lower() == value.lower() or member.name == value.upper():
                    return member
            return EntityType.UNKNOWN
        return value

    @field_validator("dependencies", "dependents")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @property
    def relevance(self) -> float:
        if self.analysis_data and self.analysis_data.relevance_score is not None:
            return self.analysis_data.relevance_score
        return 0.0

    def add_dependency(self, entity_id: str) -> bool:
        """Append ``entity_id`` to dependencies; False if already present."""
        if entity_id in self.dependencies:
            return False
        self.dependencies = [*self.dependencies, entity_id]
        return True

    def add_dependent(self, entity_id: str) -> bool:
        """Append ``entity_id`` to dependents; False if already present."""
        if entity_id in self.dependents:
            return False
        self.dependents = [*self.dependents, entity_id]
        return True


class MetadataEntity(BaseModel):
    """Identifying fields of an entity, used by metadata-only recovery."""

    id: str
    type: EntityType
    file_path: str
    label: str
    business_context: str = ""
    chain_context: str = ""
    dependencies: list[str] = Field(default_factory=list)

    @classmethod
    def from_entity(cls, entity: EntityNode, max_dependencies: int = 3) -> "MetadataEntity":
        return cls(
            id=entity.id,
            type=entity.type,
            file_path=entity.file_path,
            label=f"[Metadata] {entity.type.value}",
            business_context=entity.business_context,
            chain_context=entity.chain_context,
            dependencies=entity.dependencies[:max_dependencies],
        )
