"""
Recovery Orchestrator for chainstate.

Rebuilds a bounded working set from context backups (newest first). Each
strategy accumulates entities and relationships against the caller's token
budget and, instead of failing when the budget runs out, walks a fallback
ladder: in-place compression, progressive detail reduction (80% / 60% / 40%
of a batch), then a raw partial load that stops at the first item that
would overflow.

The accumulated cost is always the sum of per-item estimates, so it equals
the cost of re-serializing the result item by item.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from typing import Iterable, Sequence

from pydantic import BaseModel, ValidationError

from chainstate.core.models import (
    BackupMetadata,
    EntityFilter,
    EntityNode,
    MetadataEntity,
    MetadataRelationship,
    RecoveredContext,
    RecoveryStrategy,
    RecoveryStrategyType,
    RelationshipEdge,
)
from chainstate.domain.recovery.backups import BackupArchive, BackupContent
from chainstate.domain.tokens.budget import TokenBudgetManager
from chainstate.domain.tokens.compression import CompressionEngine
from chainstate.utils.logging import get_logger, log_error, log_operation

logger = get_logger("recovery.orchestrator")

DEFAULT_PRIORITY_TYPES = ("controller", "service", "interface", "component")
DEFAULT_REDUCTION_FACTORS = (0.8, 0.6, 0.4)


class _Cancelled(Exception):
    """Internal signal; converted to ``RecoveredContext(cancelled=True)``."""


# ============================================================================
# Accumulator
# ============================================================================


class _Accumulator:
    """Running result set with exact per-item cost bookkeeping."""

    def __init__(
        self,
        budget: TokenBudgetManager,
        limit: int,
        cancel_event: asyncio.Event | None = None,
    ):
        self.budget = budget
        self.limit = limit
        self.cancel_event = cancel_event
        self.entities: list[BaseModel] = []
        self.relationships: list[BaseModel] = []
        self.cost = 0
        self.entity_ids: set[str] = set()
        self.seen_entities: set[str] = set()
        self.seen_edges: set[str] = set()
        self.had_candidates = False
        self.truncated = False

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise _Cancelled()

    def cost_of(self, item: BaseModel) -> int:
        return self.budget.estimate(item)

    def fits(self, extra: int) -> bool:
        return self.cost + extra <= self.limit

    @property
    def available(self) -> int:
        return max(0, self.limit - self.cost)

    def add_entity(self, entity: BaseModel, cost: int | None = None) -> None:
        self.entities.append(entity)
        self.entity_ids.add(entity.id)
        self.seen_entities.add(entity.id)
        self.cost += self.cost_of(entity) if cost is None else cost

    def add_edge(self, edge: BaseModel, cost: int | None = None) -> None:
        self.relationships.append(edge)
        self.seen_edges.add(edge.id)
        self.cost += self.cost_of(edge) if cost is None else cost

    def replace(self, entities: list[EntityNode], relationships: list[RelationshipEdge]) -> None:
        self.entities = list(entities)
        self.relationships = list(relationships)
        self.entity_ids = {e.id for e in entities}
        self.cost = self.budget.estimate_set(entities, relationships)

    def connecting(self, edges: Iterable[RelationshipEdge], extra_ids: set[str]) -> list[RelationshipEdge]:
        """Unseen edges whose endpoints are both accumulated or in ``extra_ids``."""
        ids = self.entity_ids | extra_ids
        return [
            r for r in edges
            if r.id not in self.seen_edges and r.from_entity_id in ids and r.to_entity_id in ids
        ]


# ============================================================================
# Orchestrator
# ============================================================================


class RecoveryOrchestrator:
    """Recovers context from backups under a token budget.

    Usage:
        orchestrator = RecoveryOrchestrator(archive, budget, compression)
        backups = await archive.find_backups(session_id)
        context = await orchestrator.recover(
            backups, RecoveryStrategy(type="selective", max_tokens=5000)
        )
    """

    def __init__(
        self,
        archive: BackupArchive,
        budget: TokenBudgetManager,
        compression: CompressionEngine,
        metadata_token_limit: int = 50_000,
        estimated_tokens_per_entity: int = 100,
        min_page_size: int = 5,
        priority_types: Sequence[str] = DEFAULT_PRIORITY_TYPES,
        reduction_factors: Sequence[float] = DEFAULT_REDUCTION_FACTORS,
        target_reduction: float = 70.0,
    ):
        self.archive = archive
        self.budget = budget
        self.compression = compression
        self.metadata_token_limit = metadata_token_limit
        self.estimated_tokens_per_entity = max(1, estimated_tokens_per_entity)
        self.min_page_size = max(1, min_page_size)
        self.priority_types = [t.lower() for t in priority_types]
        self.reduction_factors = list(reduction_factors)
        self.target_reduction = target_reduction

    async def recover(
        self,
        backups: list[BackupMetadata],
        strategy: RecoveryStrategy,
        cancel_event: asyncio.Event | None = None,
    ) -> RecoveredContext:
        """Run ``strategy`` over ``backups`` (newest first)."""
        started = time.monotonic()
        if not backups:
            return RecoveredContext(
                summary="No backups available; starting with an empty context",
                next_offset=strategy.continue_from,
            )

        limit = strategy.max_tokens
        if strategy.type == RecoveryStrategyType.METADATA_ONLY:
            limit = min(limit, self.metadata_token_limit)
        acc = _Accumulator(self.budget, limit, cancel_event)

        handlers = {
            RecoveryStrategyType.SELECTIVE: self._selective,
            RecoveryStrategyType.PROGRESSIVE: self._progressive,
            RecoveryStrategyType.PRIORITY_BASED: self._priority_based,
            RecoveryStrategyType.FULL: self._full,
            RecoveryStrategyType.METADATA_ONLY: self._metadata_only,
        }
        try:
            cursor = await handlers[strategy.type](backups, strategy, acc)
        except _Cancelled:
            logger.info(f"Recovery cancelled after {len(acc.entities)} entities")
            return RecoveredContext(
                entities=acc.entities,
                relationships=acc.relationships,
                token_cost=acc.cost,
                recovery_time=time.monotonic() - started,
                source_backups=[b.file_path for b in backups],
                summary="Recovery cancelled",
                next_offset=strategy.continue_from + len(acc.entities),
                cancelled=True,
            )

        unrecoverable = not acc.entities and acc.had_candidates
        if unrecoverable:
            acc.replace([], [])

        context = RecoveredContext(
            entities=acc.entities,
            relationships=acc.relationships,
            token_cost=acc.cost,
            recovery_time=time.monotonic() - started,
            source_backups=[b.file_path for b in backups],
            has_more=acc.truncated or self.budget.is_warning(acc.cost, acc.limit),
            next_offset=cursor if cursor is not None else strategy.continue_from + len(acc.entities),
            unrecoverable=unrecoverable,
        )
        context.summary = self._summary(context, strategy, len(backups))
        log_operation(logger, "Recovery finished", {
            "strategy": strategy.type.value,
            "entities": len(context.entities),
            "relationships": len(context.relationships),
            "tokens": context.token_cost,
            "max_tokens": strategy.max_tokens,
        })
        return context

    # ========== Shared steps ==========

    def _candidates(
        self,
        content: BackupContent,
        acc: _Accumulator,
        entity_filter: EntityFilter | None,
    ) -> list[EntityNode]:
        related = None
        if entity_filter is not None and entity_filter.related_to:
            related = entity_filter.related_ids(content.relationships)
        entities = []
        seen: set[str] = set()
        for entity in content.entities:
            if entity.id in acc.seen_entities or entity.id in seen:
                continue
            if entity_filter is not None and not entity_filter.matches(entity, related):
                continue
            seen.add(entity.id)
            entities.append(entity)
        return entities

    def _compress_in_place(self, acc: _Accumulator) -> None:
        entities = [e for e in acc.entities if isinstance(e, EntityNode)]
        relationships = [r for r in acc.relationships if isinstance(r, RelationshipEdge)]
        result = self.compression.compress(
            entities,
            relationships,
            target_reduction=self.target_reduction,
            token_limit=acc.limit,
        )
        acc.replace(result.entities, result.relationships)
        logger.debug(f"In-place compression: {result.report.summary}")

    def _add_batch(
        self,
        acc: _Accumulator,
        entities: list[EntityNode],
        relationships: list[RelationshipEdge],
    ) -> bool:
        """Add a batch if it fits whole."""
        entity_costs = [acc.cost_of(e) for e in entities]
        edge_costs = [acc.cost_of(r) for r in relationships]
        if not acc.fits(sum(entity_costs) + sum(edge_costs)):
            return False
        for entity, cost in zip(entities, entity_costs):
            acc.add_entity(entity, cost)
        for edge, cost in zip(relationships, edge_costs):
            acc.add_edge(edge, cost)
        return True

    def _progressive_detail_reduction(
        self,
        acc: _Accumulator,
        entities: list[EntityNode],
        relationships: list[RelationshipEdge],
    ) -> int:
        """Try successively smaller prefixes of ``entities``; returns count added."""
        for factor in self.reduction_factors:
            acc.check_cancelled()
            count = math.floor(len(entities) * factor)
            if count <= 0:
                continue
            subset = entities[:count]
            edges = acc.connecting(relationships, {e.id for e in subset})
            if self._add_batch(acc, subset, edges):
                logger.debug(f"Detail reduction kept {count}/{len(entities)} entities")
                return count
        return 0

    def _partial_load(
        self,
        acc: _Accumulator,
        entities: list[EntityNode],
        relationships: list[RelationshipEdge],
    ) -> int:
        """Add entities one at a time until the next would overflow."""
        added = 0
        for entity in entities:
            acc.check_cancelled()
            cost = acc.cost_of(entity)
            if not acc.fits(cost):
                break
            acc.add_entity(entity, cost)
            added += 1
        for edge in acc.connecting(relationships, set()):
            cost = acc.cost_of(edge)
            if not acc.fits(cost):
                break
            acc.add_edge(edge, cost)
        acc.truncated = True
        return added

    def _fallback(
        self,
        acc: _Accumulator,
        entities: list[EntityNode],
        relationships: list[RelationshipEdge],
    ) -> bool:
        """Detail reduction, then partial load. Returns False once loading must stop."""
        if self._progressive_detail_reduction(acc, entities, relationships):
            acc.truncated = True
            return True
        self._partial_load(acc, entities, relationships)
        return False

    async def _load(self, backup: BackupMetadata) -> BackupContent | None:
        """Read one backup, or None if it cannot be read or parsed."""
        try:
            return await self.archive.load_backup(backup)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            log_error(logger, "Load backup", exc, {"file": backup.file_path})
            return None

    # ========== Strategies ==========

    async def _selective(self, backups, strategy: RecoveryStrategy, acc: _Accumulator) -> None:
        for backup in backups:
            acc.check_cancelled()
            if self.budget.should_summarize_context(acc.cost, acc.limit):
                self._compress_in_place(acc)

            content = await self._load(backup)
            if content is None:
                continue
            entities = self._candidates(content, acc, strategy.filter)
            acc.had_candidates |= bool(entities)
            for entity in entities:
                acc.seen_entities.add(entity.id)
            relationships = acc.connecting(content.relationships, {e.id for e in entities})

            if self._add_batch(acc, entities, relationships):
                continue
            if not self._fallback(acc, entities, relationships):
                break
        return None

    async def _progressive(self, backups, strategy: RecoveryStrategy, acc: _Accumulator) -> int:
        skip = strategy.continue_from
        cursor = strategy.continue_from
        stream_seen: set[str] = set()

        for backup in backups:
            acc.check_cancelled()
            if self.budget.should_summarize_context(acc.cost, acc.limit):
                self._compress_in_place(acc)

            content = await self._load(backup)
            if content is None:
                continue
            stream = [
                e for e in self._candidates(content, acc, strategy.filter)
                if e.id not in stream_seen
            ]
            stream_seen.update(e.id for e in stream)

            if skip >= len(stream):
                skip -= len(stream)
                continue
            remaining, skip = stream[skip:], 0
            acc.had_candidates = True

            index = 0
            while index < len(remaining):
                acc.check_cancelled()
                page_size = max(acc.available // self.estimated_tokens_per_entity, self.min_page_size)
                page = remaining[index:index + page_size]
                edges = acc.connecting(content.relationships, {e.id for e in page})

                if self._add_batch(acc, page, edges):
                    index += len(page)
                    cursor += len(page)
                    continue

                added = self._progressive_detail_reduction(acc, page, content.relationships)
                if not added:
                    added = self._partial_load(acc, page, content.relationships)
                acc.truncated = True
                return cursor + added

        return cursor

    async def _priority_based(self, backups, strategy: RecoveryStrategy, acc: _Accumulator) -> None:
        contents = []
        for backup in backups:
            acc.check_cancelled()
            content = await self._load(backup)
            if content is not None:
                contents.append(content)

        critical_rank = {t: i for i, t in enumerate(self.compression.critical_relationship_types)}

        for ptype in self.priority_types:
            for content in contents:
                acc.check_cancelled()
                if self.budget.is_critical(acc.cost, acc.limit):
                    acc.truncated = True
                    return None

                matching = sorted(
                    (
                        e for e in self._candidates(content, acc, strategy.filter)
                        if ptype in e.type.value.lower()
                    ),
                    key=lambda e: e.priority,
                )
                acc.had_candidates |= bool(matching)
                for entity in matching:
                    acc.check_cancelled()
                    cost = acc.cost_of(entity)
                    if self.budget.is_warning(acc.cost, acc.limit) and not acc.fits(cost):
                        self._compress_in_place(acc)
                    if not acc.fits(cost):
                        acc.truncated = True
                        continue
                    acc.add_entity(entity, cost)

                    own_edges = sorted(
                        (
                            r for r in content.relationships
                            if r.touches(entity.id) and r.id not in acc.seen_edges
                        ),
                        key=lambda r: critical_rank.get(r.relationship_type, len(critical_rank)),
                    )
                    for edge in own_edges:
                        edge_cost = acc.cost_of(edge)
                        if not acc.fits(edge_cost):
                            acc.truncated = True
                            break
                        acc.add_edge(edge, edge_cost)
        return None

    async def _full(self, backups, strategy: RecoveryStrategy, acc: _Accumulator) -> None:
        for backup in backups:
            acc.check_cancelled()
            if self.budget.should_summarize_context(acc.cost, acc.limit):
                self._compress_in_place(acc)

            content = await self._load(backup)
            if content is None:
                continue
            entities = self._candidates(content, acc, strategy.filter)
            acc.had_candidates |= bool(entities)
            for entity in entities:
                acc.seen_entities.add(entity.id)
            relationships = acc.connecting(content.relationships, {e.id for e in entities})

            if self._add_batch(acc, entities, relationships):
                continue

            # Compress this backup on its own against the remaining budget
            result = self.compression.compress(
                entities,
                relationships,
                target_reduction=self.target_reduction,
                token_limit=acc.available,
            )
            if result.entities and self._add_batch(acc, result.entities, result.relationships):
                acc.truncated = True
                continue

            if not self._fallback(acc, entities, relationships):
                break
        return None

    async def _metadata_only(self, backups, strategy: RecoveryStrategy, acc: _Accumulator) -> None:
        for backup in backups:
            acc.check_cancelled()
            content = await self._load(backup)
            if content is None:
                continue
            candidates = self._candidates(content, acc, strategy.filter)
            acc.had_candidates |= bool(candidates)
            for entity in candidates:
                acc.check_cancelled()
                stub = MetadataEntity.from_entity(entity)
                cost = acc.cost_of(stub)
                if not acc.fits(cost):
                    acc.truncated = True
                    return None
                acc.add_entity(stub, cost)

            for edge in acc.connecting(content.relationships, set()):
                stub = MetadataRelationship.from_edge(edge)
                cost = acc.cost_of(stub)
                if not acc.fits(cost):
                    acc.truncated = True
                    return None
                acc.add_edge(stub, cost)
        return None

    # ========== Reporting ==========

    def _summary(self, context: RecoveredContext, strategy: RecoveryStrategy, backup_count: int) -> str:
        if context.unrecoverable:
            return (
                f"Nothing could be recovered within {strategy.max_tokens} tokens: "
                "even the smallest slice exceeds the budget"
            )
        usage = context.token_cost / strategy.max_tokens * 100
        text = (
            f"Recovered {len(context.entities)} entities and {len(context.relationships)} "
            f"relationships from {backup_count} backup(s) using {strategy.type.value} strategy "
            f"({context.token_cost} tokens, {usage:.1f}% of budget)."
        )
        if context.has_more:
            text += f" More data is available from offset {context.next_offset}."
        return text

    def recommendations(self, context: RecoveredContext, strategy: RecoveryStrategy) -> list[str]:
        """Suggestions for a follow-up recovery call."""
        recs = []
        if context.unrecoverable:
            recs.append("Increase max_tokens or use metadata_only recovery")
        if context.has_more:
            if strategy.type == RecoveryStrategyType.PROGRESSIVE:
                recs.append(f"Continue progressive recovery with continue_from={context.next_offset}")
            else:
                recs.append("Use progressive recovery to page through the remaining entities")
        if strategy.filter is None and strategy.type == RecoveryStrategyType.SELECTIVE:
            recs.append("Add an entity filter to focus selective recovery")
        if not context.entities and not context.unrecoverable:
            recs.append("No matching entities were found; broaden the filter or start fresh discovery")
        return recs

    def next_steps(self, context: RecoveredContext) -> list[str]:
        if not context.entities:
            return ["Begin discovery for the current task"]
        steps = ["Review recovered entities and resume processing unprocessed ones"]
        unprocessed = [
            e.id for e in context.entities
            if isinstance(e, EntityNode) and not e.processed
        ]
        if unprocessed:
            steps.append(f"{len(unprocessed)} recovered entities are still unprocessed")
        return steps
