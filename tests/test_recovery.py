"""Context Recovery Tests.

Tests for backup discovery and token-bounded recovery across every
strategy, including pagination, cancellation, and unrecoverable budgets.
"""

import asyncio
import json
import tempfile
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path

from chainstate.core.models import (
    EntityFilter,
    EntityNode,
    EntityType,
    MetadataEntity,
    RecoveryStrategy,
    RecoveryStrategyType,
    RelationshipEdge,
    RelationshipType,
)
from chainstate.domain.recovery import BackupArchive, RecoveryOrchestrator
from chainstate.domain.tokens import CompressionEngine, TokenBudgetManager

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
TYPES = (EntityType.CONTROLLER, EntityType.SERVICE, EntityType.UTILITY, EntityType.REPOSITORY)


def make_entities(prefix: str, count: int, context_words: int = 20) -> list[EntityNode]:
    return [
        EntityNode(
            id=f"{prefix}{i:02d}",
            type=TYPES[i % len(TYPES)],
            file_path=f"src/{prefix.lower()}/{i}.ts",
            priority=(i % 5) + 1,
            business_context=" ".join(["checkout"] * (context_words + i % 7)),
            timestamp=BASE_TIME,
        )
        for i in range(count)
    ]


def chain_edges(entities: list[EntityNode]) -> list[RelationshipEdge]:
    return [
        RelationshipEdge(
            from_entity_id=entities[i].id,
            to_entity_id=entities[i + 1].id,
            relationship_type=RelationshipType.CALLS if i % 2 else RelationshipType.REFERENCES,
        )
        for i in range(len(entities) - 1)
    ]


class RecoveryTest(unittest.IsolatedAsyncioTestCase):
    """Test BackupArchive and RecoveryOrchestrator together."""

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.state_dir = Path(self._tmp.name)
        self.budget = TokenBudgetManager()
        self.archive = BackupArchive(self.state_dir, self.budget)
        self.orchestrator = RecoveryOrchestrator(
            self.archive,
            self.budget,
            CompressionEngine(self.budget),
        )
        self.session_id = "session-recovery"

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def _write_two_backups(self) -> None:
        older = make_entities("Old", 30)
        newer = make_entities("New", 30)
        await self.archive.write_backup(self.session_id, older, chain_edges(older), BASE_TIME)
        await self.archive.write_backup(
            self.session_id, newer, chain_edges(newer), BASE_TIME + timedelta(hours=1)
        )

    async def _recover(self, strategy: RecoveryStrategy, cancel_event: asyncio.Event | None = None):
        backups = await self.archive.find_backups(self.session_id)
        return await self.orchestrator.recover(backups, strategy, cancel_event)

    # ========== Backups ==========

    async def test_find_backups_newest_first(self) -> None:
        await self._write_two_backups()
        await self.archive.write_backup("session-other", make_entities("X", 2), [], BASE_TIME)

        backups = await self.archive.find_backups(self.session_id)

        self.assertEqual(len(backups), 2)
        self.assertGreater(backups[0].timestamp, backups[1].timestamp)
        self.assertEqual(backups[0].total_entities, 30)
        self.assertEqual(backups[0].total_relationships, 29)

    async def test_unreadable_backup_is_skipped(self) -> None:
        await self._write_two_backups()
        broken = self.archive.directory / f"context-backup-{self.session_id}-broken.json"
        broken.write_text("{not json", encoding="utf-8")

        backups = await self.archive.find_backups(self.session_id)
        self.assertEqual(len(backups), 2)

    async def test_backup_with_invalid_record_is_skipped_during_recovery(self) -> None:
        """Test that a newer backup holding a malformed entity does not abort recovery."""
        older = make_entities("Old", 30)
        await self.archive.write_backup(self.session_id, older, chain_edges(older), BASE_TIME)
        malformed = self.archive.directory / f"context-backup-{self.session_id}-2024-03-01T13-00-00.json"
        malformed.write_text(json.dumps({
            "session_id": self.session_id,
            "timestamp": (BASE_TIME + timedelta(hours=1)).isoformat(),
            "entities": [{"id": "Broken", "type": "Service"}],
            "relationships": [],
        }), encoding="utf-8")

        backups = await self.archive.find_backups(self.session_id)
        self.assertEqual(len(backups), 2)
        self.assertEqual(backups[0].file_path, str(malformed))

        for strategy_type in RecoveryStrategyType:
            with self.subTest(strategy=strategy_type.value):
                context = await self._recover(RecoveryStrategy(type=strategy_type, max_tokens=50_000))
                ids = [e.id for e in context.entities]
                self.assertTrue(ids)
                self.assertNotIn("Broken", ids)
                self.assertTrue(all(entity_id.startswith("Old") for entity_id in ids))
                if strategy_type == RecoveryStrategyType.FULL:
                    self.assertEqual(len(ids), 30)

    async def test_analyze_backups(self) -> None:
        await self._write_two_backups()

        analysis = await self.archive.analyze(self.session_id)

        self.assertEqual(analysis.total_files, 2)
        self.assertEqual(analysis.total_entities, 60)
        self.assertEqual(sum(analysis.entity_distribution.values()), 60)
        self.assertIsNotNone(analysis.time_range)
        self.assertTrue(analysis.recommendations)

    async def test_analyze_without_backups(self) -> None:
        analysis = await self.archive.analyze(self.session_id)
        self.assertEqual(analysis.total_files, 0)
        self.assertIn("No backup files available for analysis", analysis.recommendations)

    # ========== Recovery ==========

    async def test_no_backups_gives_empty_context(self) -> None:
        context = await self._recover(RecoveryStrategy(type=RecoveryStrategyType.SELECTIVE))

        self.assertEqual(context.entities, [])
        self.assertEqual(context.token_cost, 0)
        self.assertFalse(context.unrecoverable)

    async def test_every_strategy_stays_within_budget(self) -> None:
        """Test that the recovered set never serializes above max_tokens."""
        await self._write_two_backups()
        max_tokens = 5000

        for strategy_type in RecoveryStrategyType:
            with self.subTest(strategy=strategy_type.value):
                context = await self._recover(RecoveryStrategy(type=strategy_type, max_tokens=max_tokens))

                actual = self.budget.estimate_set(context.entities, context.relationships)
                self.assertLessEqual(context.token_cost, max_tokens)
                self.assertEqual(context.token_cost, actual)
                self.assertGreater(len(context.entities), 0)
                self.assertFalse(context.unrecoverable)

    async def test_newest_backup_wins_for_duplicate_ids(self) -> None:
        old = make_entities("Shared", 3)
        new = [e.model_copy(update={"business_context": "updated"}) for e in old]
        await self.archive.write_backup(self.session_id, old, [], BASE_TIME)
        await self.archive.write_backup(self.session_id, new, [], BASE_TIME + timedelta(hours=1))

        context = await self._recover(RecoveryStrategy(type=RecoveryStrategyType.FULL))

        self.assertEqual(sorted(e.id for e in context.entities), [e.id for e in old])
        self.assertTrue(all(e.business_context == "updated" for e in context.entities))

    async def test_selective_filter_by_type(self) -> None:
        await self._write_two_backups()

        context = await self._recover(RecoveryStrategy(
            type=RecoveryStrategyType.SELECTIVE,
            filter=EntityFilter(types=["controller"]),
        ))

        self.assertTrue(context.entities)
        self.assertTrue(all(e.type == EntityType.CONTROLLER for e in context.entities))

    async def test_progressive_pages_are_disjoint(self) -> None:
        """Test that continue_from resumes exactly where the previous page stopped."""
        entities = [e.model_copy(update={"type": EntityType.SERVICE}) for e in make_entities("Page", 40, 5)]
        await self.archive.write_backup(self.session_id, entities, [], BASE_TIME)

        first = await self._recover(RecoveryStrategy(type=RecoveryStrategyType.PROGRESSIVE, max_tokens=1500))
        self.assertTrue(first.has_more)
        self.assertEqual(first.next_offset, len(first.entities))
        self.assertLess(first.next_offset, 40)

        second = await self._recover(RecoveryStrategy(
            type=RecoveryStrategyType.PROGRESSIVE,
            max_tokens=1500,
            continue_from=first.next_offset,
        ))
        first_ids = {e.id for e in first.entities}
        second_ids = [e.id for e in second.entities]

        self.assertTrue(second_ids)
        self.assertTrue(first_ids.isdisjoint(second_ids))
        self.assertEqual(second_ids[0], f"Page{first.next_offset:02d}")
        self.assertEqual(second.next_offset, first.next_offset + len(second_ids))

    async def test_priority_based_loads_priority_types_first(self) -> None:
        await self._write_two_backups()

        context = await self._recover(RecoveryStrategy(type=RecoveryStrategyType.PRIORITY_BASED, max_tokens=3000))

        types = [e.type for e in context.entities]
        self.assertTrue(types)
        self.assertEqual(types[0], EntityType.CONTROLLER)
        self.assertNotIn(EntityType.UTILITY, types)

    async def test_metadata_only_returns_stubs(self) -> None:
        await self._write_two_backups()

        context = await self._recover(RecoveryStrategy(type=RecoveryStrategyType.METADATA_ONLY))

        self.assertEqual(len(context.entities), 60)
        self.assertTrue(all(isinstance(e, MetadataEntity) for e in context.entities))
        self.assertEqual(context.entities[0].label, f"[Metadata] {context.entities[0].type.value}")

    async def test_budget_below_smallest_entity_is_unrecoverable(self) -> None:
        await self._write_two_backups()

        for strategy_type in RecoveryStrategyType:
            with self.subTest(strategy=strategy_type.value):
                context = await self._recover(RecoveryStrategy(type=strategy_type, max_tokens=10))

                self.assertTrue(context.unrecoverable)
                self.assertEqual(context.entities, [])
                self.assertEqual(context.relationships, [])
                self.assertEqual(context.token_cost, 0)

    async def test_cancellation_returns_partial_result(self) -> None:
        await self._write_two_backups()
        cancel = asyncio.Event()
        cancel.set()

        context = await self._recover(RecoveryStrategy(type=RecoveryStrategyType.SELECTIVE), cancel)

        self.assertTrue(context.cancelled)
        self.assertEqual(context.entities, [])

    async def test_recommendations_for_paged_recovery(self) -> None:
        entities = make_entities("Page", 40, 5)
        await self.archive.write_backup(self.session_id, entities, [], BASE_TIME)
        strategy = RecoveryStrategy(type=RecoveryStrategyType.PROGRESSIVE, max_tokens=1500)

        context = await self._recover(strategy)
        recs = self.orchestrator.recommendations(context, strategy)

        self.assertIn(f"Continue progressive recovery with continue_from={context.next_offset}", recs)
        self.assertEqual(self.orchestrator.next_steps(context)[0],
                         "Review recovered entities and resume processing unprocessed ones")


if __name__ == "__main__":
    unittest.main()
