"""
Filter and recovery models shared by the graph store and recovery engine.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from chainstate.core.models.entity import EntityNode, MetadataEntity
from chainstate.core.models.relationship import (
    MetadataRelationship,
    RelationshipEdge,
    RelationshipType,
)
from chainstate.core.models.session import TimeRange


class EntityFilter(BaseModel):
    """Selects entities by type, id, adjacency, or timestamp."""

    types: list[str] = Field(default_factory=list, description="Case-insensitive type names")
    ids: list[str] = Field(default_factory=list)
    related_to: list[str] = Field(default_factory=list)
    relationship_types: list[RelationshipType] = Field(default_factory=list)
    time_range: TimeRange | None = None

    def matches(self, entity: EntityNode, related_ids: set[str] | None = None) -> bool:
        """Check one entity.

        ``related_ids`` is the precomputed set of ids adjacent to
        ``related_to``; it is ignored when ``related_to`` is empty.
        """
        if self.types:
            wanted = {t.lower() for t in self.types}
            if entity.type.value.lower() not in wanted:
                return False
        if self.ids and entity.id not in self.ids:
            return False
        if self.related_to and entity.id not in (related_ids or set()):
            return False
        if self.time_range and not self.time_range.contains(entity.timestamp):
            return False
        return True

    def related_ids(self, relationships: list[RelationshipEdge]) -> set[str]:
        """Ids directly connected to any ``related_to`` id."""
        anchors = set(self.related_to)
        allowed = set(self.relationship_types)
        related: set[str] = set()
        for edge in relationships:
            if allowed and edge.relationship_type not in allowed:
                continue
            if edge.from_entity_id in anchors:
                related.add(edge.to_entity_id)
            if edge.to_entity_id in anchors:
                related.add(edge.from_entity_id)
        return related


class RecoveryStrategyType(str, Enum):
    SELECTIVE = "selective"
    PROGRESSIVE = "progressive"
    PRIORITY_BASED = "priority_based"
    FULL = "full"
    METADATA_ONLY = "metadata_only"


class RecoveryStrategy(BaseModel):
    type: RecoveryStrategyType = RecoveryStrategyType.SELECTIVE
    max_tokens: int = Field(default=50_000, gt=0)
    filter: EntityFilter | None = None
    continue_from: int = Field(default=0, ge=0)


class RecoveredContext(BaseModel):
    """Bounded working set rebuilt from backups."""

    entities: list[EntityNode | MetadataEntity] = Field(default_factory=list)
    relationships: list[RelationshipEdge | MetadataRelationship] = Field(default_factory=list)
    token_cost: int = 0
    recovery_time: float = Field(default=0.0, description="Seconds")
    source_backups: list[str] = Field(default_factory=list)
    summary: str = ""
    has_more: bool = False
    next_offset: int = 0
    unrecoverable: bool = False
    cancelled: bool = False
