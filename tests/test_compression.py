"""Tests for dependency-aware compression."""

from datetime import UTC, datetime, timedelta

from chainstate.core.models import (
    EntityAnalysisData,
    EntityNode,
    EntityType,
    RelationshipEdge,
    RelationshipType,
)
from chainstate.domain.tokens import CompressionEngine, TokenBudgetManager


def build_graph() -> tuple[list[EntityNode], list[RelationshipEdge]]:
    """Two controllers calling eight services that use eight utilities."""
    base = datetime(2024, 1, 1, tzinfo=UTC)
    entities: list[EntityNode] = []
    edges: list[RelationshipEdge] = []

    for i in range(2):
        entities.append(EntityNode(
            id=f"Controller{i}",
            type=EntityType.CONTROLLER,
            file_path=f"src/controllers/c{i}.ts",
            business_context="entry point " * 10,
            timestamp=base + timedelta(minutes=i),
        ))
    for i in range(8):
        entities.append(EntityNode(
            id=f"Service{i}",
            type=EntityType.SERVICE,
            file_path=f"src/services/s{i}.ts",
            business_context="domain logic " * 10,
            analysis_data=EntityAnalysisData(relevance_score=float(i)),
            timestamp=base + timedelta(minutes=10 + i),
        ))
        entities.append(EntityNode(
            id=f"Util{i}",
            type=EntityType.UTILITY,
            file_path=f"src/utils/u{i}.ts",
            business_context="helper " * 10,
            timestamp=base + timedelta(minutes=20 + i),
        ))
        edges.append(RelationshipEdge(
            from_entity_id=f"Controller{i % 2}",
            to_entity_id=f"Service{i}",
            relationship_type=RelationshipType.CALLS,
        ))
        edges.append(RelationshipEdge(
            from_entity_id=f"Service{i}",
            to_entity_id=f"Util{i}",
            relationship_type=RelationshipType.REFERENCES,
        ))
    return entities, edges


def assert_no_dangling_edges(result) -> None:
    alive = {e.id for e in result.entities}
    for edge in result.relationships:
        assert edge.from_entity_id in alive
        assert edge.to_entity_id in alive


def test_preserved_types_survive():
    entities, edges = build_graph()
    engine = CompressionEngine(TokenBudgetManager())

    result = engine.compress(entities, edges, target_reduction=70, preserve_types=["controller"])

    kept = {e.id for e in result.entities}
    assert {"Controller0", "Controller1"} <= kept
    assert result.report.final_tokens <= result.report.original_tokens * 0.3 + 1
    assert_no_dangling_edges(result)


def test_lowest_relevance_removed_first():
    entities, edges = build_graph()
    engine = CompressionEngine(TokenBudgetManager())

    result = engine.compress(entities, edges, target_reduction=30, preserve_types=["controller", "utility"])

    kept = {e.id for e in result.entities}
    removed_services = {f"Service{i}" for i in range(8)} - kept
    assert removed_services
    # Services are removed in ascending relevance order
    highest_removed = max(int(s.removeprefix("Service")) for s in removed_services)
    assert all(f"Service{i}" not in kept for i in range(highest_removed + 1))


def test_zero_reduction_keeps_everything():
    entities, edges = build_graph()
    engine = CompressionEngine(TokenBudgetManager())

    result = engine.compress(entities, edges, target_reduction=0)

    assert len(result.entities) == len(entities)
    assert len(result.relationships) == len(edges)
    assert result.report.reduction_percentage == 0.0


def test_token_limit_is_respected():
    """Test the secondary cut brings a preserved-heavy set under a hard ceiling."""
    entities, edges = build_graph()
    budget = TokenBudgetManager()
    engine = CompressionEngine(budget)
    limit = 500

    result = engine.compress(
        entities,
        edges,
        target_reduction=10,
        preserve_types=["controller", "service", "utility"],
        token_limit=limit,
    )

    actual = budget.estimate_set(result.entities, result.relationships)
    assert actual <= limit
    assert result.report.final_tokens == actual
    assert_no_dangling_edges(result)


def test_critical_edges_ordered_first():
    entities, edges = build_graph()
    engine = CompressionEngine(TokenBudgetManager())

    result = engine.compress(entities, edges, target_reduction=0)

    types = [edge.relationship_type for edge in result.relationships]
    assert types.index(RelationshipType.REFERENCES) > max(
        i for i, t in enumerate(types) if t == RelationshipType.CALLS
    )


def test_external_reference_levels():
    """Test that references get coarser as more entities of one type are removed."""
    entities, edges = build_graph()
    engine = CompressionEngine(TokenBudgetManager())

    result = engine.compress(entities, edges, target_reduction=100, preserve_types=["controller"])

    levels = {ref.entity_type: ref.compression_level for ref in result.report.external_references}
    assert levels["Service"] == "minimal"
    assert levels["Utility"] == "minimal"
    assert "Controller" not in levels
    assert "Removed" in result.report.summary


def test_duplicate_ids_counted_once():
    entities, edges = build_graph()
    engine = CompressionEngine(TokenBudgetManager())

    result = engine.compress(entities + entities[:3], edges, target_reduction=0)

    assert len(result.entities) == len(entities)
