"""Tests for token estimation and budget bands."""

import math

from chainstate.core.models import EntityNode, EntityType, RelationshipEdge, RelationshipType, TokenThresholds
from chainstate.domain.tokens import TokenBudgetManager, UsageBand


def make_entities(count: int) -> list[EntityNode]:
    return [
        EntityNode(
            id=f"Entity{i}",
            type=EntityType.SERVICE,
            file_path=f"src/services/entity{i}.ts",
            business_context="handles part of checkout " * (i % 4),
        )
        for i in range(count)
    ]


def test_text_estimate_uses_character_ratio():
    budget = TokenBudgetManager(chars_per_token=4)
    assert budget.estimate_text("") == 0
    assert budget.estimate_text("abcd") == 1
    assert budget.estimate_text("abcde") == 2


def test_record_estimate_uses_serialized_form():
    budget = TokenBudgetManager()
    entity = make_entities(1)[0]
    assert budget.estimate(entity) == math.ceil(len(entity.model_dump_json()) / 4)


def test_subset_never_costs_more():
    """Test that every prefix of a set costs no more than the set."""
    budget = TokenBudgetManager()
    entities = make_entities(12)
    edges = [
        RelationshipEdge(
            from_entity_id=entities[i].id,
            to_entity_id=entities[i + 1].id,
            relationship_type=RelationshipType.CALLS,
        )
        for i in range(11)
    ]

    full = budget.estimate_set(entities, edges)
    previous = 0
    for size in range(len(entities) + 1):
        cost = budget.estimate_set(entities[:size], edges[: max(0, size - 1)])
        assert previous <= cost <= full
        previous = cost


def test_should_summarize_at_ninety_percent():
    budget = TokenBudgetManager(TokenThresholds(max_tokens=1000))
    assert not budget.should_summarize_context(899)
    assert budget.should_summarize_context(900)
    assert budget.should_summarize_context(1500)


def test_bands_and_critical():
    budget = TokenBudgetManager(TokenThresholds(max_tokens=1000))
    assert budget.classify(100) == UsageBand.NORMAL
    assert budget.classify(800) == UsageBand.WARNING
    assert budget.classify(900) == UsageBand.COMPRESS
    assert budget.classify(950) == UsageBand.EMERGENCY
    assert not budget.is_critical(949)
    assert budget.is_critical(950)


def test_measure_reports_usage():
    budget = TokenBudgetManager(TokenThresholds(max_tokens=100))
    usage = budget.measure(additional_context="x" * 360)

    assert usage.current_tokens == 90
    assert usage.band == UsageBand.COMPRESS
    assert usage.usage_fraction == 0.9
    assert usage.available_tokens == 10


def test_exact_counter_is_preferred():
    budget = TokenBudgetManager(counter=lambda text: len(text.split()))
    assert budget.estimate_text("three word phrase") == 3


def test_failing_counter_falls_back_to_ratio():
    def broken(text: str) -> int:
        raise RuntimeError("tokenizer unavailable")

    budget = TokenBudgetManager(chars_per_token=4, counter=broken)
    assert budget.estimate_text("abcdefgh") == 2
