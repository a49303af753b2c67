"""
Dependency-aware compression of entity/relationship sets.

Preserved entity types are kept (bounded per type), everything else is
dropped in ascending relevance order until the target reduction is met.
Relationships are then re-derived from the surviving entities, so an edge
never outlives either of its endpoints.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Iterable

from chainstate.core.models import (
    DEFAULT_CRITICAL_RELATIONSHIPS,
    EntityNode,
    RelationshipEdge,
    RelationshipType,
    SummaryConfidence,
)
from chainstate.domain.tokens.budget import TokenBudgetManager
from chainstate.utils.logging import get_logger, log_operation

logger = get_logger("tokens.compression")

# Removed-per-type counts above which references get coarser
MINIMAL_REFERENCE_THRESHOLD = 5
SUMMARY_REFERENCE_THRESHOLD = 2


@dataclass
class ExternalReference:
    """Pointer to an entity removed by compression."""

    entity_id: str
    entity_type: str
    file_path: str
    compression_level: str  # minimal | summary | reference_only


@dataclass
class CompressionReport:
    original_tokens: int = 0
    final_tokens: int = 0
    removed_entities: int = 0
    kept_entities: int = 0
    removed_relationships: int = 0
    kept_relationships: int = 0
    abbreviated_entities: int = 0
    summary: str = ""
    external_references: list[ExternalReference] = field(default_factory=list)

    @property
    def reduction_percentage(self) -> float:
        if not self.original_tokens:
            return 0.0
        return round((self.original_tokens - self.final_tokens) / self.original_tokens * 100, 2)


@dataclass
class CompressionResult:
    entities: list[EntityNode]
    relationships: list[RelationshipEdge]
    report: CompressionReport


def abbreviate_entity(entity: EntityNode) -> EntityNode:
    """Shortened copy of an entity with truncated lists and context."""
    updates: dict = {
        "dependencies": entity.dependencies[:5],
        "dependents": entity.dependents[:5],
        "domain_context": entity.domain_context[:100],
    }
    if entity.analysis_data is not None:
        data = entity.analysis_data
        updates["analysis_data"] = data.model_copy(update={
            "is_summarized": True,
            "summary_confidence": data.summary_confidence or SummaryConfidence.MEDIUM,
            "members": data.members[:3],
            "inheritance_chain": data.inheritance_chain[:2],
            "business_rules": data.business_rules[:2],
            "integration_points": data.integration_points[:2],
            "testable_units": data.testable_units[:2],
        })
    return entity.model_copy(update=updates)


class CompressionEngine:
    """Shrinks entity/relationship sets toward a token target.

    Usage:
        engine = CompressionEngine(budget, preserve_types=["Controller"])
        result = engine.compress(entities, relationships, target_reduction=70)
    """

    def __init__(
        self,
        budget: TokenBudgetManager,
        max_entities_per_type: int = 20,
        preserve_types: Iterable[str] = (),
        critical_relationship_types: Iterable[RelationshipType] = DEFAULT_CRITICAL_RELATIONSHIPS,
    ):
        self.budget = budget
        self.max_entities_per_type = max_entities_per_type
        self.preserve_types = list(preserve_types)
        self.critical_relationship_types = list(critical_relationship_types)

    def compress(
        self,
        entities: list[EntityNode],
        relationships: list[RelationshipEdge],
        target_reduction: float = 70.0,
        preserve_types: Iterable[str] | None = None,
        critical_relationship_types: Iterable[RelationshipType] | None = None,
        token_limit: int | None = None,
    ) -> CompressionResult:
        """Compress a set.

        Args:
            entities: Entities to compress
            relationships: Relationships among them
            target_reduction: Percentage of tokens to remove (0-100)
            preserve_types: Entity types kept at full detail (case-insensitive)
            critical_relationship_types: Edge types kept ahead of others
            token_limit: Hard ceiling; triggers the secondary cut when exceeded

        Returns:
            CompressionResult with the surviving sets and a report
        """
        preserve = {t.lower() for t in (preserve_types if preserve_types is not None else self.preserve_types)}
        critical = list(
            critical_relationship_types
            if critical_relationship_types is not None
            else self.critical_relationship_types
        )

        entities = _first_by_id(entities)
        relationships = _first_by_id(relationships)

        entity_cost = {e.id: self.budget.estimate(e) for e in entities}
        edge_cost = {r.id: self.budget.estimate(r) for r in relationships}
        original_tokens = sum(entity_cost.values()) + sum(edge_cost.values())
        target_tokens = original_tokens * (1 - max(0.0, min(target_reduction, 100.0)) / 100)

        # Partition into preserved (bounded per type) and removal candidates
        preserved_groups: dict[str, list[EntityNode]] = defaultdict(list)
        candidates: list[EntityNode] = []
        for entity in entities:
            key = entity.type.value.lower()
            if key in preserve:
                preserved_groups[key].append(entity)
            else:
                candidates.append(entity)

        preserved: list[EntityNode] = []
        for group in preserved_groups.values():
            group.sort(key=lambda e: (not e.processed, -e.timestamp.timestamp()))
            preserved.extend(group[: self.max_entities_per_type])
            candidates.extend(group[self.max_entities_per_type:])

        candidates.sort(key=_removal_order)
        preserved.sort(key=_removal_order)

        alive = {e.id for e in entities}
        edges_by_entity: dict[str, list[RelationshipEdge]] = defaultdict(list)
        for edge in relationships:
            edges_by_entity[edge.from_entity_id].append(edge)
            edges_by_entity[edge.to_entity_id].append(edge)

        current = sum(entity_cost.values()) + sum(
            edge_cost[r.id] for r in relationships
            if r.from_entity_id in alive and r.to_entity_id in alive
        )

        def drop(entity: EntityNode) -> None:
            nonlocal current
            if entity.id not in alive:
                return
            for edge in edges_by_entity[entity.id]:
                if edge.from_entity_id in alive and edge.to_entity_id in alive:
                    current -= edge_cost[edge.id]
            alive.discard(entity.id)
            current -= entity_cost[entity.id]

        removed: list[EntityNode] = []
        while current > target_tokens and candidates:
            victim = candidates.pop(0)
            drop(victim)
            removed.append(victim)

        kept_entities = [e for e in entities if e.id in alive]
        kept_edges = self._order_edges(
            [r for r in relationships if r.from_entity_id in alive and r.to_entity_id in alive],
            critical,
        )

        abbreviated = 0
        if token_limit is not None and current > token_limit:
            kept_entities, kept_edges, current, abbreviated, extra_removed = self._secondary_cut(
                kept_entities, kept_edges, candidates + preserved, critical,
                entity_cost, edge_cost, current, token_limit,
            )
            removed.extend(extra_removed)

        report = CompressionReport(
            original_tokens=original_tokens,
            final_tokens=current,
            removed_entities=len(entities) - len(kept_entities),
            kept_entities=len(kept_entities),
            removed_relationships=len(relationships) - len(kept_edges),
            kept_relationships=len(kept_edges),
            abbreviated_entities=abbreviated,
            external_references=_external_references(removed),
        )
        report.summary = _summarize(report, removed)

        log_operation(logger, "Compression applied", {
            "original_tokens": original_tokens,
            "final_tokens": current,
            "removed_entities": report.removed_entities,
            "reduction": f"{report.reduction_percentage}%",
        })
        return CompressionResult(kept_entities, kept_edges, report)

    # ========== Secondary cut ==========

    def _secondary_cut(
        self,
        entities: list[EntityNode],
        edges: list[RelationshipEdge],
        removal_order: list[EntityNode],
        critical: list[RelationshipType],
        entity_cost: dict[str, int],
        edge_cost: dict[str, int],
        current: int,
        token_limit: int,
    ) -> tuple[list[EntityNode], list[RelationshipEdge], int, int, list[EntityNode]]:
        critical_set = set(critical)

        # 1. Non-critical edges, least important last in order so pop from end
        while current > token_limit:
            index = _last_index(edges, lambda r: r.relationship_type not in critical_set)
            if index is None:
                break
            current -= edge_cost[edges.pop(index).id]

        # 2. Abbreviate entity details where that actually saves tokens
        abbreviated = 0
        if current > token_limit:
            shortened = []
            for entity in entities:
                short = abbreviate_entity(entity)
                cost = self.budget.estimate(short)
                if cost < entity_cost[entity.id]:
                    current -= entity_cost[entity.id] - cost
                    entity_cost[entity.id] = cost
                    shortened.append(short)
                    abbreviated += 1
                else:
                    shortened.append(entity)
            entities = shortened

        # 3. Critical edges, from the end
        while current > token_limit and edges:
            current -= edge_cost[edges.pop().id]

        # 4. Entities themselves
        removed: list[EntityNode] = []
        if current > token_limit:
            alive = {e.id for e in entities}
            for victim in removal_order:
                if current <= token_limit:
                    break
                if victim.id not in alive:
                    continue
                alive.discard(victim.id)
                current -= entity_cost[victim.id]
                removed.append(victim)
            entities = [e for e in entities if e.id in alive]

        return entities, edges, current, abbreviated, removed

    @staticmethod
    def _order_edges(edges: list[RelationshipEdge], critical: list[RelationshipType]) -> list[RelationshipEdge]:
        rank = {t: i for i, t in enumerate(critical)}
        return sorted(edges, key=lambda r: rank.get(r.relationship_type, len(rank)))


# ============================================================================
# Helpers
# ============================================================================


def _removal_order(entity: EntityNode) -> tuple[float, int, float]:
    # Lowest relevance first, then least urgent priority, then oldest
    return (entity.relevance, -entity.priority, entity.timestamp.timestamp())


def _first_by_id(items: list) -> list:
    unique: dict[str, object] = {}
    for item in items:
        unique.setdefault(item.id, item)
    return list(unique.values())


def _last_index(items: list, predicate) -> int | None:
    for index in range(len(items) - 1, -1, -1):
        if predicate(items[index]):
            return index
    return None


def _external_references(removed: list[EntityNode]) -> list[ExternalReference]:
    per_type = Counter(e.type.value for e in removed)
    refs = []
    for entity in removed:
        count = per_type[entity.type.value]
        if count > MINIMAL_REFERENCE_THRESHOLD:
            level = "minimal"
        elif count > SUMMARY_REFERENCE_THRESHOLD:
            level = "summary"
        else:
            level = "reference_only"
        refs.append(ExternalReference(entity.id, entity.type.value, entity.file_path, level))
    return refs


def _summarize(report: CompressionReport, removed: list[EntityNode]) -> str:
    text = (
        f"Compressed {report.kept_entities + report.removed_entities} entities to "
        f"{report.kept_entities} ({report.reduction_percentage}% token reduction) "
        f"at {datetime.now(UTC).isoformat(timespec='seconds')}."
    )
    if removed:
        by_type = Counter(e.type.value for e in removed)
        listed = ", ".join(f"{t}: {n}" for t, n in by_type.most_common())
        text += f" Removed {listed}."
    if report.abbreviated_entities:
        text += f" Abbreviated {report.abbreviated_entities} entities."
    return text
