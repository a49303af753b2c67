"""
Relationship models for chainstate.

Edges are directed ``from_entity_id -> to_entity_id``; path finding treats
them as undirected for reachability.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from chainstate.core.models.entity import DiscoveryMethod
from chainstate.utils.ids import generate_relationship_id, is_valid_record_id


class RelationshipType(str, Enum):
    """Closed set of edge types between entities."""
    USES = "USES"
    IMPLEMENTS = "IMPLEMENTS"
    EXTENDS = "EXTENDS"
    CALLS = "CALLS"
    REFERENCES = "REFERENCES"
    CONTAINS = "CONTAINS"
    DEPENDS_ON = "DEPENDS_ON"
    CONFIGURES = "CONFIGURES"
    HANDLES = "HANDLES"
    PUBLISHES = "PUBLISHES"
    SUBSCRIBES = "SUBSCRIBES"
    VALIDATES = "VALIDATES"
    TRANSFORMS = "TRANSFORMS"


DEFAULT_CRITICAL_RELATIONSHIPS: tuple[RelationshipType, ...] = (
    RelationshipType.DEPENDS_ON,
    RelationshipType.CALLS,
    RelationshipType.USES,
    RelationshipType.IMPLEMENTS,
    RelationshipType.EXTENDS,
)


class RelationshipEdge(BaseModel):
    """A typed edge between two entities."""

    id: str = ""
    from_entity_id: str
    to_entity_id: str
    relationship_type: RelationshipType
    strength: float = Field(default=1.0, ge=0.0, le=1.0)
    bidirectional: bool = False
    discovery_method: DiscoveryMethod = DiscoveryMethod.MANUAL
    context: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("relationship_type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        if isinstance(value, str) and not isinstance(value, RelationshipType):
            return value.upper()
        return value

    @model_validator(mode="after")
    def _assign_id(self) -> "RelationshipEdge":
        if not self.id:
            self.id = generate_relationship_id(
                self.from_entity_id, self.to_entity_id, self.relationship_type.value
            )
        if not is_valid_record_id(self.id):
            raise ValueError(f"invalid relationship id: {self.id!r}")
        return self

    def touches(self, entity_id: str) -> bool:
        return entity_id in (self.from_entity_id, self.to_entity_id)

    def other_end(self, entity_id: str) -> str:
        return self.to_entity_id if self.from_entity_id == entity_id else self.from_entity_id


class MetadataRelationship(BaseModel):
    """Identifying fields of an edge, used by metadata-only recovery."""

    id: str
    from_entity_id: str
    to_entity_id: str
    relationship_type: RelationshipType
    strength: float = 1.0

    @classmethod
    def from_edge(cls, edge: RelationshipEdge) -> "MetadataRelationship":
        return cls(
            id=edge.id,
            from_entity_id=edge.from_entity_id,
            to_entity_id=edge.to_entity_id,
            relationship_type=edge.relationship_type,
            strength=edge.strength,
        )
