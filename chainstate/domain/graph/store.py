"""
Graph Store for chainstate.

Durable, file-per-record storage for sessions, entities, relationships,
work items, chains, checkpoints, and reports, with a bounded in-memory
cache per namespace.

Every write is persisted to disk before the cache is updated, so the disk
is always the authority and a cache miss can fall back to it. The work
queue dequeue (scan, pick, mark assigned) holds a lock for its whole
duration so two concurrent callers never receive the same item.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import networkx as nx
from pydantic import BaseModel

from chainstate.core.models import (
    ChainStatus,
    CheckpointData,
    DiscoveryChain,
    DiscoverySession,
    EntityFilter,
    EntityNode,
    GraphSnapshot,
    RelationshipEdge,
    RelationshipType,
    SessionConfiguration,
    WorkItem,
    WorkItemStatus,
)
from chainstate.core.models.session import MAX_TASK_DESCRIPTION_LENGTH, snapshot_counts
from chainstate.core.models.work import can_transition_chain, can_transition_work_item
from chainstate.core.results import CoreError
from chainstate.domain.graph.cache import BoundedCache
from chainstate.infrastructure.persistence.record_files import RecordFileStore
from chainstate.utils.logging import get_logger, log_operation

logger = get_logger("graph.store")

M = TypeVar("M", bound=BaseModel)

# Namespace directory names under the state root
SESSIONS_DIR = "sessions"
ENTITIES_DIR = "entities"
RELATIONSHIPS_DIR = "relationships"
WORK_ITEMS_DIR = "work-items"
CHAINS_DIR = "chains"
CHECKPOINTS_DIR = "checkpoints"
REPORTS_DIR = "reports"
COORDINATION_DIR = "coordination"


class GraphStore:
    """Keyed storage for the discovery graph and its work queue.

    Usage:
        store = GraphStore(state_dir, cache_max_size=10_000)
        await store.initialize()
        await store.add_entity(entity)
        path = await store.find_path("OrderController", "OrderRepository")
    """

    def __init__(
        self,
        state_dir: str | Path,
        cache_max_size: int = 10_000,
        cleanup_buffer: int = 100,
    ):
        self.state_dir = Path(state_dir)

        self._sessions_files = RecordFileStore(self.state_dir / SESSIONS_DIR)
        self._entity_files = RecordFileStore(self.state_dir / ENTITIES_DIR)
        self._relationship_files = RecordFileStore(self.state_dir / RELATIONSHIPS_DIR)
        self._work_item_files = RecordFileStore(self.state_dir / WORK_ITEMS_DIR)
        self._chain_files = RecordFileStore(self.state_dir / CHAINS_DIR)
        self._checkpoint_files = RecordFileStore(self.state_dir / CHECKPOINTS_DIR)
        self._report_files = RecordFileStore(self.state_dir / REPORTS_DIR)
        self._coordination_files = RecordFileStore(self.state_dir / COORDINATION_DIR)

        self.sessions: BoundedCache[DiscoverySession] = BoundedCache("sessions", cache_max_size, cleanup_buffer)
        self.entities: BoundedCache[EntityNode] = BoundedCache("entities", cache_max_size, cleanup_buffer)
        self.relationships: BoundedCache[RelationshipEdge] = BoundedCache(
            "relationships", cache_max_size, cleanup_buffer
        )
        self.work_items: BoundedCache[WorkItem] = BoundedCache("work-items", cache_max_size, cleanup_buffer)
        self.chains: BoundedCache[DiscoveryChain] = BoundedCache("chains", cache_max_size, cleanup_buffer)

        self._dequeue_lock: asyncio.Lock | None = None
        self._entity_lock: asyncio.Lock | None = None

    async def initialize(self) -> None:
        """Create the namespace directories."""
        for files in (
            self._sessions_files,
            self._entity_files,
            self._relationship_files,
            self._work_item_files,
            self._chain_files,
            self._checkpoint_files,
            self._report_files,
            self._coordination_files,
        ):
            await asyncio.to_thread(files.ensure_directory)
        logger.debug(f"Graph store initialized at {self.state_dir}")

    # ========== Internal helpers ==========

    def _locks(self) -> tuple[asyncio.Lock, asyncio.Lock]:
        if self._dequeue_lock is None:
            self._dequeue_lock = asyncio.Lock()
        if self._entity_lock is None:
            self._entity_lock = asyncio.Lock()
        return self._dequeue_lock, self._entity_lock

    @staticmethod
    async def _persist(
        files: RecordFileStore,
        cache: BoundedCache[M],
        key: str,
        record: M,
    ) -> M:
        await files.write(key, record.model_dump(mode="json"))
        cache.put(key, record.model_copy(deep=True))
        return record

    @staticmethod
    async def _load(
        files: RecordFileStore,
        cache: BoundedCache[M],
        key: str,
        model: type[M],
    ) -> M | None:
        cached = cache.get(key)
        if cached is not None:
            return cached.model_copy(deep=True)
        data = await files.read(key)
        if data is None:
            return None
        record = model.model_validate(data)
        cache.put(key, record)
        return record.model_copy(deep=True)

    @staticmethod
    async def _load_all(files: RecordFileStore, model: type[M]) -> list[M]:
        return [model.model_validate(data) for data in await files.read_all()]

    # ========== Sessions ==========

    async def create_session(
        self,
        task_description: str,
        workspace_root: str = "",
        ai_model: str = "",
        configuration: SessionConfiguration | None = None,
    ) -> DiscoverySession:
        """Create and persist a new discovery session."""
        if not task_description or not task_description.strip():
            raise CoreError.validation("Task description is required")
        if len(task_description) > MAX_TASK_DESCRIPTION_LENGTH:
            raise CoreError.validation(
                f"Task description must be at most {MAX_TASK_DESCRIPTION_LENGTH} characters",
                length=len(task_description),
            )

        session = DiscoverySession(
            task_description=task_description,
            workspace_root=workspace_root,
            ai_model=ai_model,
            configuration=configuration or SessionConfiguration(),
        )
        await self.save_session(session)
        log_operation(logger, "Session created", {"session_id": session.session_id})
        return session

    async def save_session(self, session: DiscoverySession) -> DiscoverySession:
        return await self._persist(self._sessions_files, self.sessions, session.session_id, session)

    async def load_session(self, session_id: str) -> DiscoverySession | None:
        return await self._load(self._sessions_files, self.sessions, session_id, DiscoverySession)

    async def require_session(self, session_id: str) -> DiscoverySession:
        session = await self.load_session(session_id)
        if session is None:
            raise CoreError.not_found("Session", session_id)
        return session

    async def update_session_progress(self, session_id: str, **counters: Any) -> DiscoverySession:
        """Update progress counters on a session (e.g. ``entities_processed=4``)."""
        session = await self.require_session(session_id)
        unknown = set(counters) - set(type(session.progress).model_fields)
        if unknown:
            raise CoreError.validation(f"Unknown progress fields: {sorted(unknown)}")
        progress = session.progress.model_copy(
            update={**counters, "last_update_timestamp": datetime.now(UTC)}
        )
        return await self.save_session(session.model_copy(update={"progress": progress}))

    # ========== Entities ==========

    async def add_entity(self, entity: EntityNode) -> EntityNode:
        """Add or overwrite an entity; a later write with the same id wins."""
        _, entity_lock = self._locks()
        async with entity_lock:
            await self._persist(self._entity_files, self.entities, entity.id, entity)
        logger.debug(f"Entity stored: {entity.id} ({entity.type.value})")
        return entity

    async def get_entity(self, entity_id: str) -> EntityNode | None:
        return await self._load(self._entity_files, self.entities, entity_id, EntityNode)

    async def update_entity(self, entity_id: str, updates: dict[str, Any]) -> EntityNode:
        """Merge ``updates`` into an existing entity and persist it."""
        if not updates:
            raise CoreError.validation("Entity updates must not be empty", entity_id=entity_id)
        if "id" in updates and updates["id"] != entity_id:
            raise CoreError.validation("Entity id cannot be changed", entity_id=entity_id)

        _, entity_lock = self._locks()
        async with entity_lock:
            existing = await self.get_entity(entity_id)
            if existing is None:
                raise CoreError.not_found("Entity", entity_id)
            merged = EntityNode.model_validate({**existing.model_dump(), **updates})
            return await self._persist(self._entity_files, self.entities, entity_id, merged)

    async def mark_entity_processed(self, entity_id: str, agent_id: str | None = None) -> EntityNode:
        updates: dict[str, Any] = {"processed": True}
        if agent_id:
            updates["processing_agent"] = agent_id
        return await self.update_entity(entity_id, updates)

    async def get_all_entities(self, entity_filter: EntityFilter | None = None) -> list[EntityNode]:
        """All durable entities, optionally filtered."""
        entities = await self._load_all(self._entity_files, EntityNode)
        if entity_filter is None:
            return entities

        related: set[str] | None = None
        if entity_filter.related_to:
            related = entity_filter.related_ids(await self.get_all_relationships())
        return [e for e in entities if entity_filter.matches(e, related)]

    # ========== Relationships ==========

    async def add_relationship(self, edge: RelationshipEdge) -> RelationshipEdge:
        """Persist an edge and update both endpoints' dependency lists.

        The source gains the target in ``dependents``; the target gains the
        source in ``dependencies``. Endpoints are only touched when both
        entities already exist.
        """
        await self._persist(self._relationship_files, self.relationships, edge.id, edge)

        _, entity_lock = self._locks()
        async with entity_lock:
            source = await self.get_entity(edge.from_entity_id)
            target = await self.get_entity(edge.to_entity_id)
            if source is not None and target is not None:
                if source.add_dependent(target.id):
                    await self._persist(self._entity_files, self.entities, source.id, source)
                if target.add_dependency(source.id):
                    await self._persist(self._entity_files, self.entities, target.id, target)

        logger.debug(
            f"Relationship stored: {edge.from_entity_id} -{edge.relationship_type.value}-> {edge.to_entity_id}"
        )
        return edge

    async def get_relationship(self, relationship_id: str) -> RelationshipEdge | None:
        return await self._load(
            self._relationship_files, self.relationships, relationship_id, RelationshipEdge
        )

    async def get_all_relationships(self) -> list[RelationshipEdge]:
        return await self._load_all(self._relationship_files, RelationshipEdge)

    async def get_relationships(
        self,
        entity_id: str,
        relationship_type: RelationshipType | None = None,
    ) -> list[RelationshipEdge]:
        """Edges touching ``entity_id`` in either direction."""
        return [
            edge for edge in await self.get_all_relationships()
            if edge.touches(entity_id)
            and (relationship_type is None or edge.relationship_type == relationship_type)
        ]

    async def find_path(self, from_id: str, to_id: str) -> list[str]:
        """Shortest path between two entities, treating edges as undirected.

        Returns the ordered id list, ``[from_id]`` when both ids are equal,
        or an empty list when ``to_id`` is unreachable.
        """
        if from_id == to_id:
            return [from_id]

        G = nx.Graph()
        for edge in await self.get_all_relationships():
            G.add_edge(edge.from_entity_id, edge.to_entity_id)

        try:
            return nx.shortest_path(G, from_id, to_id)
        except (nx.NetworkXNoPath, nx.NodeNotFound):
            return []

    # ========== Work Queue ==========

    async def add_work_item(self, item: WorkItem) -> WorkItem:
        if await self.get_entity(item.entity_id) is None:
            logger.warning(f"Work item {item.id} targets unknown entity {item.entity_id}")
        return await self._persist(self._work_item_files, self.work_items, item.id, item)

    async def get_work_item(self, work_item_id: str) -> WorkItem | None:
        return await self._load(self._work_item_files, self.work_items, work_item_id, WorkItem)

    async def get_all_work_items(self, status: WorkItemStatus | None = None) -> list[WorkItem]:
        items = await self._load_all(self._work_item_files, WorkItem)
        if status is not None:
            items = [item for item in items if item.status == status]
        return items

    async def get_next_work_item(
        self,
        priority: int | None = None,
        agent_id: str | None = None,
    ) -> WorkItem | None:
        """Dequeue the most urgent pending item and mark it assigned.

        Args:
            priority: Ceiling; items with a numerically higher priority are skipped
            agent_id: Skip items already bound to a different agent, and bind
                the returned item to this agent

        Returns:
            The assigned item (already persisted), or None if nothing is eligible
        """
        dequeue_lock, _ = self._locks()
        async with dequeue_lock:
            candidates = [
                item for item in await self.get_all_work_items(WorkItemStatus.PENDING)
                if (priority is None or item.priority <= priority)
                and (
                    agent_id is None
                    or item.assigned_agent is None
                    or item.assigned_agent == agent_id
                )
            ]
            if not candidates:
                return None

            chosen = min(candidates, key=lambda item: (item.priority, item.created_at))
            assigned = chosen.model_copy(update={
                "status": WorkItemStatus.ASSIGNED,
                "assigned_agent": agent_id or chosen.assigned_agent,
                "updated_at": datetime.now(UTC),
            })
            await self._persist(self._work_item_files, self.work_items, assigned.id, assigned)

        logger.debug(f"Dequeued work item {assigned.id} (priority {assigned.priority})")
        return assigned

    async def update_work_item_status(
        self,
        work_item_id: str,
        status: WorkItemStatus,
        error_message: str | None = None,
    ) -> WorkItem:
        """Move a work item through its state machine.

        Passing ``error_message`` records it and increments ``retry_count``.
        """
        item = await self.get_work_item(work_item_id)
        if item is None:
            raise CoreError.not_found("Work item", work_item_id)
        if not can_transition_work_item(item.status, status):
            raise CoreError.validation(
                f"Illegal work item transition {item.status.value} -> {status.value}",
                work_item_id=work_item_id,
            )

        now = datetime.now(UTC)
        updates: dict[str, Any] = {"status": status, "updated_at": now}
        if error_message:
            updates["error_message"] = error_message
            updates["retry_count"] = item.retry_count + 1
        if status == WorkItemStatus.COMPLETED:
            updates["completed_at"] = now
        return await self._persist(
            self._work_item_files, self.work_items, work_item_id, item.model_copy(update=updates)
        )

    async def claim_work_item(self, work_item_id: str, holder: str) -> WorkItem | None:
        """Reserve a pending item for ``holder`` without binding it to an agent.

        The item leaves the pending queue, so ``get_next_work_item`` will not
        hand it out, and only ``holder`` may later pass it on with
        ``assign_work_item(..., claimed_by=holder)``.

        Returns:
            The claimed item, or None if it is missing or held by someone else
        """
        dequeue_lock, _ = self._locks()
        async with dequeue_lock:
            item = await self.get_work_item(work_item_id)
            if item is None:
                return None
            if item.status == WorkItemStatus.ASSIGNED and item.assigned_agent == holder:
                return item
            if item.status != WorkItemStatus.PENDING or item.assigned_agent is not None:
                return None
            claimed = item.model_copy(update={
                "status": WorkItemStatus.ASSIGNED,
                "assigned_agent": holder,
                "updated_at": datetime.now(UTC),
            })
            return await self._persist(self._work_item_files, self.work_items, work_item_id, claimed)

    async def assign_work_item(
        self,
        work_item_id: str,
        agent_id: str,
        claimed_by: str | None = None,
    ) -> WorkItem:
        """Bind a work item to ``agent_id``.

        A pending item can be bound unless it is pinned to another agent. An
        assigned item can only be rebound by whoever holds it: ``agent_id``
        itself or the ``claimed_by`` reservation.

        Raises:
            CoreError: If the item is missing, finished, or held by someone else
        """
        dequeue_lock, _ = self._locks()
        async with dequeue_lock:
            item = await self.get_work_item(work_item_id)
            if item is None:
                raise CoreError.not_found("Work item", work_item_id)
            if item.status not in (WorkItemStatus.PENDING, WorkItemStatus.ASSIGNED):
                raise CoreError.validation(
                    f"Cannot assign work item in status {item.status.value}",
                    work_item_id=work_item_id,
                )
            holder = item.assigned_agent
            if item.status == WorkItemStatus.PENDING:
                allowed = holder is None or holder == agent_id
            else:
                allowed = holder is not None and holder in (agent_id, claimed_by)
            if not allowed:
                raise CoreError.validation(
                    f"Work item {work_item_id} is already held by {holder or 'another consumer'}",
                    work_item_id=work_item_id,
                    assigned_agent=holder,
                )
            updated = item.model_copy(update={
                "status": WorkItemStatus.ASSIGNED,
                "assigned_agent": agent_id,
                "updated_at": datetime.now(UTC),
            })
            return await self._persist(self._work_item_files, self.work_items, work_item_id, updated)

    async def release_work_item(self, work_item_id: str) -> WorkItem:
        """Return an item to the pending queue with no agent."""
        dequeue_lock, _ = self._locks()
        async with dequeue_lock:
            item = await self.get_work_item(work_item_id)
            if item is None:
                raise CoreError.not_found("Work item", work_item_id)
            if not can_transition_work_item(item.status, WorkItemStatus.PENDING):
                raise CoreError.validation(
                    f"Cannot release work item in status {item.status.value}",
                    work_item_id=work_item_id,
                )
            updated = item.model_copy(update={
                "status": WorkItemStatus.PENDING,
                "assigned_agent": None,
                "updated_at": datetime.now(UTC),
            })
            return await self._persist(self._work_item_files, self.work_items, work_item_id, updated)

    async def get_work_queue_stats(self) -> dict[str, Any]:
        items = await self.get_all_work_items()
        by_status = {status: 0 for status in WorkItemStatus}
        by_priority: dict[int, int] = {}
        for item in items:
            by_status[item.status] += 1
            by_priority[item.priority] = by_priority.get(item.priority, 0) + 1
        return {
            "total": len(items),
            "pending": by_status[WorkItemStatus.PENDING],
            "processing": by_status[WorkItemStatus.ASSIGNED] + by_status[WorkItemStatus.IN_PROGRESS],
            "completed": by_status[WorkItemStatus.COMPLETED],
            "failed": by_status[WorkItemStatus.FAILED],
            "blocked": by_status[WorkItemStatus.BLOCKED],
            "by_priority": dict(sorted(by_priority.items())),
        }

    # ========== Chains ==========

    async def add_chain(self, chain: DiscoveryChain) -> DiscoveryChain:
        if not chain.name.strip():
            raise CoreError.validation("Chain name is required", chain_id=chain.id)
        return await self._persist(self._chain_files, self.chains, chain.id, chain)

    async def get_chain(self, chain_id: str) -> DiscoveryChain | None:
        return await self._load(self._chain_files, self.chains, chain_id, DiscoveryChain)

    async def get_all_chains(self) -> list[DiscoveryChain]:
        return await self._load_all(self._chain_files, DiscoveryChain)

    async def update_chain_status(
        self,
        chain_id: str,
        status: ChainStatus,
        missing_links: list[str] | None = None,
    ) -> DiscoveryChain:
        chain = await self.get_chain(chain_id)
        if chain is None:
            raise CoreError.not_found("Chain", chain_id)
        if not can_transition_chain(chain.completion_status, status):
            raise CoreError.validation(
                f"Illegal chain transition {chain.completion_status.value} -> {status.value}",
                chain_id=chain_id,
            )
        updates: dict[str, Any] = {"completion_status": status, "timestamp": datetime.now(UTC)}
        if missing_links is not None:
            updates["missing_links"] = list(missing_links)
        return await self._persist(self._chain_files, self.chains, chain_id, chain.model_copy(update=updates))

    # ========== Checkpoints ==========

    async def save_checkpoint(self, checkpoint: CheckpointData) -> Path:
        files = self._checkpoint_files.child(checkpoint.session_id)
        path = await files.write(checkpoint.checkpoint_id, checkpoint.model_dump(mode="json"))
        log_operation(logger, "Checkpoint saved", {
            "session_id": checkpoint.session_id,
            "checkpoint_id": checkpoint.checkpoint_id,
        })
        return path

    async def create_checkpoint(
        self,
        session_id: str,
        context_summary: str = "",
        next_actions: list[str] | None = None,
        known_issues: list[str] | None = None,
        recovery_instructions: str = "",
    ) -> CheckpointData:
        """Snapshot the current session, graph, queue, and chain state."""
        session = await self.require_session(session_id)
        entities = await self.get_all_entities()
        relationships = await self.get_all_relationships()
        chains = await self.get_all_chains()

        processed = [e for e in entities if e.processed]
        last_processed = max(processed, key=lambda e: e.timestamp).id if processed else None
        critical = [
            e.id for e in entities
            if e.priority == 1 and not e.processed
        ]

        checkpoint = CheckpointData(
            session_id=session_id,
            phase=session.current_phase,
            progress_snapshot=session.progress,
            entity_graph_snapshot=GraphSnapshot(
                node_count=len(entities),
                edge_count=len(relationships),
                last_processed_entity=last_processed,
            ),
            work_queue_snapshot=snapshot_counts(await self.get_work_queue_stats()),
            chain_status_snapshot={c.id: c.completion_status.value for c in chains},
            context_summary=context_summary,
            next_actions=next_actions or [],
            critical_dependencies=critical,
            known_issues=known_issues or [],
            recovery_instructions=recovery_instructions,
        )
        await self.save_checkpoint(checkpoint)
        return checkpoint

    async def list_checkpoints(self, session_id: str) -> list[CheckpointData]:
        """Checkpoints for a session, newest first."""
        files = self._checkpoint_files.child(session_id)
        checkpoints = await self._load_all(files, CheckpointData)
        return sorted(checkpoints, key=lambda c: c.timestamp, reverse=True)

    async def load_checkpoint(
        self,
        session_id: str,
        checkpoint_id: str | None = None,
    ) -> CheckpointData | None:
        """Load a checkpoint by id, or the latest when no id is given."""
        if checkpoint_id is None:
            checkpoints = await self.list_checkpoints(session_id)
            return checkpoints[0] if checkpoints else None
        data = await self._checkpoint_files.child(session_id).read(checkpoint_id)
        return CheckpointData.model_validate(data) if data is not None else None

    # ========== Reports & Snapshots ==========

    async def save_report(self, session_id: str, report: dict[str, Any]) -> Path:
        return await self._report_files.write(session_id, report)

    async def load_report(self, session_id: str) -> dict[str, Any] | None:
        return await self._report_files.read(session_id)

    async def save_coordination_snapshot(self, session_id: str, snapshot: dict[str, Any]) -> Path:
        return await self._coordination_files.write(session_id, snapshot)

    async def load_coordination_snapshot(self, session_id: str) -> dict[str, Any] | None:
        return await self._coordination_files.read(session_id)

    # ========== Cache Management ==========

    def _caches(self) -> list[BoundedCache]:
        return [self.sessions, self.entities, self.relationships, self.work_items, self.chains]

    def compact_caches(self) -> int:
        """Shrink every cache below its cap by the cleanup buffer."""
        evicted = sum(len(cache.compact()) for cache in self._caches())
        if evicted:
            log_operation(logger, "Caches compacted", {"evicted": evicted})
        return evicted

    def cache_sizes(self) -> dict[str, int]:
        return {cache.name: len(cache) for cache in self._caches()}
