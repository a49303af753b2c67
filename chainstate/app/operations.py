"""
Core operations boundary.

Every public method returns an ``OperationResult``. ``CoreError`` keeps its
kind, pydantic validation failures map to VALIDATION, and storage failures
map to STORAGE_IO (malformed JSON records are flagged with
``details["parse_error"]``). Failures are logged before conversion.
"""

from __future__ import annotations

import asyncio
import functools
import json
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel, ValidationError

from chainstate.app.context import ChainStateContext
from chainstate.core.models import (
    AgentConfiguration,
    ChainStatus,
    DiscoveryChain,
    DistributionStrategy,
    EntityFilter,
    EntityNode,
    RecoveryStrategy,
    RelationshipEdge,
    RelationshipType,
    SessionConfiguration,
    WorkItem,
    WorkItemStatus,
)
from chainstate.core.results import CoreError, ErrorKind, OperationResult
from chainstate.domain.graph import GraphStore, analysis
from chainstate.utils.logging import get_logger, log_error

logger = get_logger("app.operations")

M = TypeVar("M", bound=BaseModel)


def _coerce(model: type[M], value: M | dict[str, Any]) -> M:
    return value if isinstance(value, model) else model.model_validate(value)


def boundary(operation: str) -> Callable:
    """Convert exceptions raised by an async operation into failed results."""

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[OperationResult]]:
        @functools.wraps(func)
        async def wrapper(self: "CoreOperations", *args: Any, **kwargs: Any) -> OperationResult:
            try:
                data = await func(self, *args, **kwargs)
            except CoreError as exc:
                log_error(logger, operation, exc, exc.details)
                return OperationResult.from_error(exc)
            except ValidationError as exc:
                log_error(logger, operation, exc)
                return OperationResult.fail(ErrorKind.VALIDATION, str(exc), {
                    "errors": exc.errors(include_url=False, include_context=False),
                })
            except json.JSONDecodeError as exc:
                log_error(logger, operation, exc)
                return OperationResult.fail(ErrorKind.STORAGE_IO, f"Malformed record: {exc}", {"parse_error": True})
            except OSError as exc:
                log_error(logger, operation, exc)
                return OperationResult.fail(ErrorKind.STORAGE_IO, str(exc), {
                    "filename": getattr(exc, "filename", None),
                })
            except ValueError as exc:
                log_error(logger, operation, exc)
                return OperationResult.fail(ErrorKind.VALIDATION, str(exc))
            if isinstance(data, OperationResult):
                return data
            return OperationResult.ok(data, operation)

        return wrapper

    return decorator


class CoreOperations:
    """Request-facing API over a ``ChainStateContext``.

    Usage:
        ops = CoreOperations(context)
        result = await ops.create_session("Map the order flow")
        if result.success:
            session_id = result.data.session_id
    """

    def __init__(self, context: ChainStateContext):
        self.context = context

    @property
    def store(self) -> GraphStore:
        return self.context.store

    # ========== Sessions ==========

    @boundary("Create session")
    async def create_session(
        self,
        task_description: str,
        workspace_root: str = "",
        ai_model: str = "",
        configuration: SessionConfiguration | dict[str, Any] | None = None,
    ):
        if configuration is not None:
            configuration = _coerce(SessionConfiguration, configuration)
        return await self.store.create_session(task_description, workspace_root, ai_model, configuration)

    @boundary("Load session")
    async def load_session(self, session_id: str):
        return await self.store.require_session(session_id)

    @boundary("Update session progress")
    async def update_session_progress(self, session_id: str, **counters: Any):
        return await self.store.update_session_progress(session_id, **counters)

    @boundary("Create checkpoint")
    async def create_checkpoint(
        self,
        session_id: str,
        context_summary: str = "",
        next_actions: list[str] | None = None,
        known_issues: list[str] | None = None,
        recovery_instructions: str = "",
    ):
        return await self.store.create_checkpoint(
            session_id, context_summary, next_actions, known_issues, recovery_instructions,
        )

    @boundary("Load checkpoint")
    async def load_checkpoint(self, session_id: str, checkpoint_id: str | None = None):
        checkpoint = await self.store.load_checkpoint(session_id, checkpoint_id)
        if checkpoint is None:
            raise CoreError.not_found("Checkpoint", checkpoint_id or session_id)
        return checkpoint

    @boundary("List checkpoints")
    async def list_checkpoints(self, session_id: str):
        return await self.store.list_checkpoints(session_id)

    # ========== Entities & Relationships ==========

    @boundary("Add entity")
    async def add_entity(self, entity: EntityNode | dict[str, Any]):
        return await self.store.add_entity(_coerce(EntityNode, entity))

    @boundary("Get entity")
    async def get_entity(self, entity_id: str):
        entity = await self.store.get_entity(entity_id)
        if entity is None:
            raise CoreError.not_found("Entity", entity_id)
        return entity

    @boundary("Update entity")
    async def update_entity(self, entity_id: str, updates: dict[str, Any]):
        return await self.store.update_entity(entity_id, updates)

    @boundary("Mark entity processed")
    async def mark_entity_processed(self, entity_id: str, agent_id: str | None = None):
        return await self.store.mark_entity_processed(entity_id, agent_id)

    @boundary("Query entities")
    async def get_entities(self, entity_filter: EntityFilter | dict[str, Any] | None = None):
        if entity_filter is not None:
            entity_filter = _coerce(EntityFilter, entity_filter)
        return await self.store.get_all_entities(entity_filter)

    @boundary("Add relationship")
    async def add_relationship(self, edge: RelationshipEdge | dict[str, Any]):
        return await self.store.add_relationship(_coerce(RelationshipEdge, edge))

    @boundary("Get relationships")
    async def get_relationships(self, entity_id: str, relationship_type: RelationshipType | str | None = None):
        if isinstance(relationship_type, str):
            relationship_type = RelationshipType(relationship_type.upper())
        return await self.store.get_relationships(entity_id, relationship_type)

    @boundary("Find path")
    async def find_path(self, from_id: str, to_id: str):
        return await self.store.find_path(from_id, to_id)

    # ========== Work Queue ==========

    @boundary("Add work item")
    async def add_work_item(self, item: WorkItem | dict[str, Any]):
        return await self.store.add_work_item(_coerce(WorkItem, item))

    @boundary("Get next work item")
    async def get_next_work_item(self, priority: int | None = None, agent_id: str | None = None):
        return await self.store.get_next_work_item(priority, agent_id)

    @boundary("Update work item status")
    async def update_work_item_status(
        self,
        work_item_id: str,
        status: WorkItemStatus | str,
        error_message: str | None = None,
    ):
        return await self.store.update_work_item_status(work_item_id, WorkItemStatus(status), error_message)

    @boundary("Work queue stats")
    async def get_work_queue_stats(self):
        return await self.store.get_work_queue_stats()

    # ========== Chains, Reports & Export ==========

    @boundary("Add chain")
    async def add_chain(self, chain: DiscoveryChain | dict[str, Any]):
        return await self.store.add_chain(_coerce(DiscoveryChain, chain))

    @boundary("Update chain status")
    async def update_chain_status(
        self,
        chain_id: str,
        status: ChainStatus | str,
        missing_links: list[str] | None = None,
    ):
        return await self.store.update_chain_status(chain_id, ChainStatus(status), missing_links)

    @boundary("Validate chains")
    async def validate_chains(self, chain_ids: list[str] | None = None, apply: bool = False):
        validations = await analysis.validate_chains(self.store, chain_ids, apply=apply)
        return [v.to_dict() for v in validations]

    @boundary("Generate report")
    async def generate_report(self, session_id: str):
        return await analysis.generate_report(self.store, session_id)

    @boundary("Export graph")
    async def export_graph(self, session_id: str, fmt: str = "yaml"):
        text, path = await analysis.export_graph(self.store, session_id, fmt)
        return {"format": fmt, "path": str(path) if path else None, "content": text}

    # ========== Tokens ==========

    @boundary("Measure context")
    async def measure_context(self, additional_context: str = "", max_tokens: int | None = None):
        entities = await self.store.get_all_entities()
        relationships = await self.store.get_all_relationships()
        usage = self.context.budget.measure(entities, relationships, additional_context, max_tokens)
        return {
            "current_tokens": usage.current_tokens,
            "max_tokens": usage.max_tokens,
            "usage_fraction": usage.usage_fraction,
            "band": usage.band.value,
            "should_summarize": self.context.budget.should_summarize_context(usage.current_tokens, usage.max_tokens),
            "is_critical": self.context.budget.is_critical(usage.current_tokens, usage.max_tokens),
        }

    @boundary("Compress context")
    async def compress_context(
        self,
        target_reduction: float | None = None,
        preserve_types: list[str] | None = None,
        token_limit: int | None = None,
    ):
        entities = await self.store.get_all_entities()
        relationships = await self.store.get_all_relationships()
        result = self.context.compression.compress(
            entities,
            relationships,
            target_reduction=target_reduction if target_reduction is not None else self.context.config.tokens.target_reduction,
            preserve_types=preserve_types,
            token_limit=token_limit,
        )
        return result

    # ========== Backups & Recovery ==========

    @boundary("Backup context")
    async def backup_context(self, session_id: str):
        """Write the store's current entities and relationships to a backup."""
        await self.store.require_session(session_id)
        entities = await self.store.get_all_entities()
        relationships = await self.store.get_all_relationships()
        return await self.context.archive.write_backup(session_id, entities, relationships)

    @boundary("Analyze backups")
    async def analyze_backups(self, session_id: str, entity_filter: EntityFilter | dict[str, Any] | None = None):
        if entity_filter is not None:
            entity_filter = _coerce(EntityFilter, entity_filter)
        return await self.context.archive.analyze(session_id, entity_filter)

    @boundary("Recover context")
    async def recover_context(
        self,
        session_id: str,
        strategy: RecoveryStrategy | dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        strategy = _coerce(RecoveryStrategy, strategy) if strategy is not None else RecoveryStrategy()
        backups = await self.context.archive.find_backups(session_id)
        recovered = await self.context.recovery.recover(backups, strategy, cancel_event)
        details = {
            "recommendations": self.context.recovery.recommendations(recovered, strategy),
            "next_steps": self.context.recovery.next_steps(recovered),
        }
        if recovered.cancelled:
            return OperationResult(
                success=False,
                kind=ErrorKind.CANCELLED,
                message="Recovery cancelled",
                data=recovered,
                details=details,
            )
        return OperationResult(success=True, message=recovered.summary, data=recovered, details=details)

    # ========== Coordination ==========

    @boundary("Start coordination")
    async def start_coordination(
        self,
        session_id: str,
        strategy: DistributionStrategy | str | None = None,
        consider_experience: bool | None = None,
        balance_load: bool | None = None,
        monitor: bool = True,
    ):
        await self.store.require_session(session_id)
        started = await self.context.coordinator.start(
            session_id,
            DistributionStrategy(strategy) if strategy is not None else None,
            consider_experience,
            balance_load,
        )
        if monitor:
            self.context.monitor.start()
        return started

    @boundary("Register agent")
    async def register_agent(self, config: AgentConfiguration | dict[str, Any]):
        return await self.context.coordinator.register_agent(_coerce(AgentConfiguration, config))

    @boundary("Unregister agent")
    async def unregister_agent(self, agent_id: str):
        return await self.context.coordinator.unregister_agent(agent_id)

    @boundary("Submit tasks")
    async def submit_tasks(self, tasks: list[WorkItem | dict[str, Any]]):
        return await self.context.coordinator.add_tasks([_coerce(WorkItem, t) for t in tasks])

    @boundary("Pull pending work")
    async def pull_pending_work(self, limit: int = 10):
        return await self.context.coordinator.pull_pending_work(limit)

    @boundary("Complete task")
    async def complete_task(self, agent_id: str, task_id: str, success: bool, error: str | None = None):
        return await self.context.coordinator.handle_task_completion(agent_id, task_id, success, error)

    @boundary("Record heartbeat")
    async def record_heartbeat(self, agent_id: str):
        if not await self.context.coordinator.record_heartbeat(agent_id):
            raise CoreError.not_found("Agent", agent_id)
        return agent_id

    @boundary("Coordination report")
    async def coordination_report(self):
        return self.context.coordinator.get_coordination_report()

    @boundary("Stop coordination")
    async def stop_coordination(self):
        await self.context.monitor.stop()
        return await self.context.coordinator.stop()

    # ========== Maintenance ==========

    @boundary("Compact caches")
    async def compact_caches(self):
        evicted = self.store.compact_caches()
        return {"evicted": evicted, "sizes": self.store.cache_sizes()}

    @boundary("State overview")
    async def state_overview(self):
        return {
            "state_dir": str(self.context.config.state_dir),
            "work_queue": await self.store.get_work_queue_stats(),
            "entities": len(await self.store.get_all_entities()),
            "relationships": len(await self.store.get_all_relationships()),
            "chains": len(await self.store.get_all_chains()),
            "cache_sizes": self.store.cache_sizes(),
        }
