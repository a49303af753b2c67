"""Graph Store Tests.

Tests for durable entity, relationship, work queue, chain, session, and
checkpoint storage, including cache eviction and concurrent dequeue.
"""

import asyncio
import tempfile
import unittest
from pathlib import Path

from chainstate.core.models import (
    ChainStatus,
    DiscoveryChain,
    EntityFilter,
    EntityNode,
    EntityType,
    RelationshipEdge,
    RelationshipType,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)
from chainstate.core.results import CoreError, ErrorKind
from chainstate.domain.graph import GraphStore


def make_entity(entity_id: str, entity_type: EntityType = EntityType.SERVICE, **fields) -> EntityNode:
    return EntityNode(id=entity_id, type=entity_type, file_path=f"src/{entity_id}.ts", **fields)


def make_work_item(entity_id: str, priority: int = 3) -> WorkItem:
    return WorkItem(entity_id=entity_id, task_type=WorkItemType.ANALYZE_ENTITY, priority=priority)


class GraphStoreTest(unittest.IsolatedAsyncioTestCase):
    """Test GraphStore persistence and queries."""

    async def asyncSetUp(self) -> None:
        """Set up a store in a temporary state root."""
        self._tmp = tempfile.TemporaryDirectory()
        self.state_dir = Path(self._tmp.name)
        self.store = GraphStore(self.state_dir)
        await self.store.initialize()

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    # ========== Entities ==========

    async def test_later_write_with_same_id_wins(self) -> None:
        """Test that re-adding an entity id overwrites it without duplicates."""
        await self.store.add_entity(make_entity("OrderService"))
        await self.store.add_entity(
            EntityNode(id="OrderService", type=EntityType.SERVICE, file_path="src/orders/v2.ts")
        )

        entities = await self.store.get_all_entities()
        self.assertEqual([e.id for e in entities], ["OrderService"])
        self.assertEqual(entities[0].file_path, "src/orders/v2.ts")

    async def test_entity_written_to_disk_as_json(self) -> None:
        """Test the on-disk layout of an entity record."""
        await self.store.add_entity(make_entity("OrderService"))
        self.assertTrue((self.state_dir / "entities" / "OrderService.json").exists())

    async def test_mutating_added_record_does_not_touch_cache(self) -> None:
        """Test that the cache keeps what was written to disk, not the caller's object."""
        entity = make_entity("OrderService", business_context="orders")
        await self.store.add_entity(entity)

        entity.business_context = "changed after save"

        self.assertEqual((await self.store.get_entity("OrderService")).business_context, "orders")

    async def test_update_entity_merges_fields(self) -> None:
        await self.store.add_entity(make_entity("OrderService"))
        updated = await self.store.update_entity("OrderService", {"priority": 1, "business_context": "checkout"})

        self.assertEqual(updated.priority, 1)
        self.assertEqual((await self.store.get_entity("OrderService")).business_context, "checkout")

    async def test_update_entity_rejects_empty_updates(self) -> None:
        await self.store.add_entity(make_entity("OrderService"))
        with self.assertRaises(CoreError) as ctx:
            await self.store.update_entity("OrderService", {})
        self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION)

    async def test_update_missing_entity_is_not_found(self) -> None:
        with self.assertRaises(CoreError) as ctx:
            await self.store.update_entity("Ghost", {"priority": 1})
        self.assertEqual(ctx.exception.kind, ErrorKind.NOT_FOUND)

    async def test_mark_entity_processed_records_agent(self) -> None:
        await self.store.add_entity(make_entity("OrderService"))
        entity = await self.store.mark_entity_processed("OrderService", "agent-1")

        self.assertTrue(entity.processed)
        self.assertEqual(entity.processing_agent, "agent-1")

    async def test_missing_entity_returns_none(self) -> None:
        self.assertIsNone(await self.store.get_entity("Nope"))

    async def test_filter_by_type_and_relation(self) -> None:
        """Test type filtering (case-insensitive) and related_to filtering."""
        await self.store.add_entity(make_entity("OrderController", EntityType.CONTROLLER))
        await self.store.add_entity(make_entity("OrderService"))
        await self.store.add_entity(make_entity("AuditService"))
        await self.store.add_relationship(RelationshipEdge(
            from_entity_id="OrderController",
            to_entity_id="OrderService",
            relationship_type=RelationshipType.CALLS,
        ))

        services = await self.store.get_all_entities(EntityFilter(types=["service"]))
        self.assertEqual({e.id for e in services}, {"OrderService", "AuditService"})

        related = await self.store.get_all_entities(EntityFilter(related_to=["OrderController"]))
        self.assertEqual([e.id for e in related], ["OrderService"])

    # ========== Relationships ==========

    async def test_relationship_updates_both_endpoints(self) -> None:
        """Test that adding A->B makes B a dependent of A and A a dependency of B."""
        await self.store.add_entity(make_entity("A"))
        await self.store.add_entity(make_entity("B"))
        edge = RelationshipEdge(from_entity_id="A", to_entity_id="B", relationship_type="uses")

        await self.store.add_relationship(edge)
        await self.store.add_relationship(edge)

        a = await self.store.get_entity("A")
        b = await self.store.get_entity("B")
        self.assertEqual(a.dependents, ["B"])
        self.assertEqual(b.dependencies, ["A"])

    async def test_relationship_with_missing_endpoint_leaves_entities_alone(self) -> None:
        await self.store.add_entity(make_entity("A"))
        await self.store.add_relationship(
            RelationshipEdge(from_entity_id="A", to_entity_id="Missing", relationship_type=RelationshipType.USES)
        )

        self.assertEqual((await self.store.get_entity("A")).dependents, [])
        self.assertEqual(len(await self.store.get_relationships("A")), 1)

    async def test_get_relationships_by_type(self) -> None:
        for entity_id in ("A", "B", "C"):
            await self.store.add_entity(make_entity(entity_id))
        await self.store.add_relationship(
            RelationshipEdge(from_entity_id="A", to_entity_id="B", relationship_type=RelationshipType.CALLS)
        )
        await self.store.add_relationship(
            RelationshipEdge(from_entity_id="C", to_entity_id="A", relationship_type=RelationshipType.USES)
        )

        self.assertEqual(len(await self.store.get_relationships("A")), 2)
        calls = await self.store.get_relationships("A", RelationshipType.CALLS)
        self.assertEqual([r.to_entity_id for r in calls], ["B"])

    # ========== Path Finding ==========

    async def test_find_path_shortest_hops(self) -> None:
        """Test BFS over {A-B, B-C, A-D, D-C} finds a two-hop path."""
        for source, target in (("A", "B"), ("B", "C"), ("A", "D"), ("D", "C")):
            await self.store.add_relationship(
                RelationshipEdge(from_entity_id=source, to_entity_id=target, relationship_type=RelationshipType.CALLS)
            )

        path = await self.store.find_path("A", "C")
        self.assertEqual(len(path), 3)
        self.assertEqual(path[0], "A")
        self.assertEqual(path[-1], "C")
        self.assertIn(path[1], {"B", "D"})

    async def test_find_path_ignores_edge_direction(self) -> None:
        await self.store.add_relationship(
            RelationshipEdge(from_entity_id="B", to_entity_id="A", relationship_type=RelationshipType.USES)
        )
        self.assertEqual(await self.store.find_path("A", "B"), ["A", "B"])

    async def test_find_path_to_self_and_unreachable(self) -> None:
        await self.store.add_relationship(
            RelationshipEdge(from_entity_id="A", to_entity_id="B", relationship_type=RelationshipType.USES)
        )
        self.assertEqual(await self.store.find_path("A", "A"), ["A"])
        self.assertEqual(await self.store.find_path("A", "Z"), [])

    async def test_find_path_between_separate_components(self) -> None:
        for source, target in (("A", "B"), ("C", "D")):
            await self.store.add_relationship(
                RelationshipEdge(from_entity_id=source, to_entity_id=target, relationship_type=RelationshipType.CALLS)
            )
        self.assertEqual(await self.store.find_path("A", "D"), [])
        self.assertEqual(await self.store.find_path("Z", "Z"), ["Z"])

    # ========== Work Queue ==========

    async def test_next_work_item_respects_priority(self) -> None:
        """Test that priorities [3, 1, 2] dequeue as 1, 2, 3."""
        for priority in (3, 1, 2):
            await self.store.add_work_item(make_work_item("OrderService", priority))

        order = []
        for _ in range(3):
            item = await self.store.get_next_work_item()
            order.append(item.priority)
            self.assertEqual(item.status, WorkItemStatus.ASSIGNED)
        self.assertEqual(order, [1, 2, 3])
        self.assertIsNone(await self.store.get_next_work_item())

    async def test_next_work_item_priority_ceiling_and_agent(self) -> None:
        await self.store.add_work_item(make_work_item("OrderService", 4))
        await self.store.add_work_item(make_work_item("OrderService", 2))

        item = await self.store.get_next_work_item(priority=3, agent_id="agent-1")
        self.assertEqual(item.priority, 2)
        self.assertEqual(item.assigned_agent, "agent-1")
        self.assertIsNone(await self.store.get_next_work_item(priority=3))

    async def test_next_work_item_skips_items_bound_to_other_agents(self) -> None:
        item = make_work_item("OrderService", 1)
        item.assigned_agent = "agent-2"
        await self.store.add_work_item(item)

        self.assertIsNone(await self.store.get_next_work_item(agent_id="agent-1"))
        self.assertEqual((await self.store.get_next_work_item(agent_id="agent-2")).id, item.id)

    async def test_concurrent_dequeue_never_double_assigns(self) -> None:
        """Test that concurrent get_next_work_item calls return distinct items."""
        for priority in (1, 2, 3, 4, 5):
            await self.store.add_work_item(make_work_item("OrderService", priority))

        results = await asyncio.gather(*(self.store.get_next_work_item() for _ in range(10)))
        taken = [item.id for item in results if item is not None]

        self.assertEqual(len(taken), 5)
        self.assertEqual(len(set(taken)), 5)

    async def test_work_item_transitions(self) -> None:
        """Test legal and illegal work item transitions and their side effects."""
        item = await self.store.add_work_item(make_work_item("OrderService"))

        with self.assertRaises(CoreError) as ctx:
            await self.store.update_work_item_status(item.id, WorkItemStatus.COMPLETED)
        self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION)

        await self.store.update_work_item_status(item.id, WorkItemStatus.IN_PROGRESS)
        failed = await self.store.update_work_item_status(item.id, WorkItemStatus.FAILED, "timeout")
        self.assertEqual(failed.retry_count, 1)
        self.assertEqual(failed.error_message, "timeout")

        await self.store.update_work_item_status(item.id, WorkItemStatus.PENDING)
        await self.store.update_work_item_status(item.id, WorkItemStatus.IN_PROGRESS)
        done = await self.store.update_work_item_status(item.id, WorkItemStatus.COMPLETED)
        self.assertIsNotNone(done.completed_at)

        with self.assertRaises(CoreError):
            await self.store.update_work_item_status(item.id, WorkItemStatus.PENDING)

    async def test_assign_and_release(self) -> None:
        item = await self.store.add_work_item(make_work_item("OrderService"))

        assigned = await self.store.assign_work_item(item.id, "agent-1")
        self.assertEqual(assigned.assigned_agent, "agent-1")

        released = await self.store.release_work_item(item.id)
        self.assertEqual(released.status, WorkItemStatus.PENDING)
        self.assertIsNone(released.assigned_agent)

    async def test_assign_refuses_item_held_by_another_agent(self) -> None:
        await self.store.add_work_item(make_work_item("OrderService"))
        taken = await self.store.get_next_work_item(agent_id="agent-2")

        with self.assertRaises(CoreError) as ctx:
            await self.store.assign_work_item(taken.id, "agent-1")
        self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION)
        self.assertEqual((await self.store.get_work_item(taken.id)).assigned_agent, "agent-2")

        again = await self.store.assign_work_item(taken.id, "agent-2")
        self.assertEqual(again.assigned_agent, "agent-2")

    async def test_assign_refuses_item_dequeued_without_agent(self) -> None:
        await self.store.add_work_item(make_work_item("OrderService"))
        taken = await self.store.get_next_work_item()

        with self.assertRaises(CoreError):
            await self.store.assign_work_item(taken.id, "agent-1")

    async def test_claimed_item_is_hidden_from_dequeue(self) -> None:
        """Test that a claim takes the item out of the queue until its holder assigns it."""
        item = await self.store.add_work_item(make_work_item("OrderService", 1))

        claimed = await self.store.claim_work_item(item.id, "coordinator:session-1")
        self.assertEqual(claimed.status, WorkItemStatus.ASSIGNED)
        self.assertIsNone(await self.store.get_next_work_item(agent_id="agent-2"))
        self.assertIsNone(await self.store.claim_work_item(item.id, "coordinator:session-2"))

        with self.assertRaises(CoreError):
            await self.store.assign_work_item(item.id, "agent-1")
        assigned = await self.store.assign_work_item(item.id, "agent-1", claimed_by="coordinator:session-1")
        self.assertEqual(assigned.assigned_agent, "agent-1")

    async def test_work_queue_stats(self) -> None:
        a = await self.store.add_work_item(make_work_item("A", 1))
        await self.store.add_work_item(make_work_item("B", 1))
        c = await self.store.add_work_item(make_work_item("C", 2))
        await self.store.update_work_item_status(a.id, WorkItemStatus.IN_PROGRESS)
        await self.store.update_work_item_status(c.id, WorkItemStatus.BLOCKED)

        stats = await self.store.get_work_queue_stats()
        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["pending"], 1)
        self.assertEqual(stats["processing"], 1)
        self.assertEqual(stats["blocked"], 1)
        self.assertEqual(stats["by_priority"], {1: 2, 2: 1})

    # ========== Chains ==========

    async def test_chain_transitions(self) -> None:
        await self.store.add_chain(DiscoveryChain(id="checkout", name="Checkout", chain_path=["A", "B"]))

        with self.assertRaises(CoreError):
            await self.store.update_chain_status("checkout", ChainStatus.COMPLETE)

        await self.store.update_chain_status("checkout", ChainStatus.IN_PROGRESS)
        chain = await self.store.update_chain_status("checkout", ChainStatus.PARTIAL, ["A->B"])
        self.assertEqual(chain.completion_status, ChainStatus.PARTIAL)
        self.assertEqual(chain.missing_links, ["A->B"])

    # ========== Sessions & Checkpoints ==========

    async def test_session_validation(self) -> None:
        with self.assertRaises(CoreError):
            await self.store.create_session("   ")
        with self.assertRaises(CoreError):
            await self.store.create_session("x" * 1001)

    async def test_session_progress_update(self) -> None:
        session = await self.store.create_session("Map the checkout flow")
        updated = await self.store.update_session_progress(session.session_id, entities_processed=4)

        self.assertEqual(updated.progress.entities_processed, 4)
        reloaded = await self.store.load_session(session.session_id)
        self.assertEqual(reloaded.progress.entities_processed, 4)

        with self.assertRaises(CoreError):
            await self.store.update_session_progress(session.session_id, bogus=1)

    async def test_checkpoints_newest_first(self) -> None:
        """Test checkpoint snapshots and latest-checkpoint loading."""
        session = await self.store.create_session("Map the checkout flow")
        await self.store.add_entity(make_entity("A", processed=True))
        await self.store.add_entity(make_entity("B", priority=1))

        first = await self.store.create_checkpoint(session.session_id, context_summary="first")
        second = await self.store.create_checkpoint(session.session_id, context_summary="second")

        checkpoints = await self.store.list_checkpoints(session.session_id)
        self.assertEqual(len(checkpoints), 2)
        self.assertEqual({c.checkpoint_id for c in checkpoints}, {first.checkpoint_id, second.checkpoint_id})

        latest = await self.store.load_checkpoint(session.session_id)
        self.assertEqual(latest.checkpoint_id, checkpoints[0].checkpoint_id)
        self.assertEqual(latest.entity_graph_snapshot.node_count, 2)
        self.assertEqual(latest.entity_graph_snapshot.last_processed_entity, "A")
        self.assertEqual(latest.critical_dependencies, ["B"])

        by_id = await self.store.load_checkpoint(session.session_id, first.checkpoint_id)
        self.assertEqual(by_id.context_summary, "first")


class GraphStoreCacheTest(unittest.IsolatedAsyncioTestCase):
    """Test the bounded caches in front of durable storage."""

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = GraphStore(self._tmp.name, cache_max_size=50, cleanup_buffer=100)
        await self.store.initialize()

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_overflow_evicts_oldest_and_keeps_durable_records(self) -> None:
        """Test inserting max+150 entities evicts exactly the 150 oldest."""
        ids = [f"Entity{i:03d}" for i in range(200)]
        for entity_id in ids:
            await self.store.add_entity(make_entity(entity_id))

        cached = list(self.store.entities)
        self.assertLessEqual(len(cached), 50)
        self.assertEqual(cached, ids[150:])
        self.assertTrue(all(entity_id not in self.store.entities for entity_id in ids[:150]))

        evicted = await self.store.get_entity(ids[0])
        self.assertIsNotNone(evicted)
        self.assertEqual(evicted.id, ids[0])

    async def test_compact_frees_cleanup_buffer(self) -> None:
        for i in range(50):
            await self.store.add_entity(make_entity(f"Entity{i:03d}"))

        evicted = self.store.compact_caches()
        self.assertEqual(evicted, 50)
        self.assertEqual(self.store.cache_sizes()["entities"], 0)


if __name__ == "__main__":
    unittest.main()
