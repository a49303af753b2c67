"""
Task Coordinator for chainstate.

Distributes work items from the graph store's queue across registered
agents. One coordination session is active at a time; it holds the agent
registry, the pending queue, and running statistics, and is discarded on
``stop()`` after a final snapshot is persisted.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import UTC, datetime
from typing import Any, Callable

from chainstate.core.event_bus import EventBus, EventPayload
from chainstate.core.events import (
    TOPIC_AGENT_DISCONNECTED,
    TOPIC_AGENT_RECONNECTED,
    TOPIC_AGENT_REGISTERED,
    TOPIC_AGENT_UNREGISTERED,
    TOPIC_COORDINATION_STOPPED,
    TOPIC_TASK_ASSIGNED,
    TOPIC_TASK_COMPLETED,
    TOPIC_TASKS_REQUEUED,
    create_agent_event,
    create_coordination_stopped_event,
    create_task_assigned_event,
    create_task_completed_event,
    create_tasks_requeued_event,
)
from chainstate.core.models import (
    AgentConfiguration,
    AgentState,
    AgentStatus,
    CoordinationStatistics,
    DistributionStrategy,
    WorkItem,
    WorkItemStatus,
)
from chainstate.core.results import CoreError, ErrorKind, OperationResult
from chainstate.domain.coordination.strategies import AgentSlot, DistributionOptions, build_plan
from chainstate.domain.graph.store import GraphStore
from chainstate.domain.tokens.budget import TokenBudgetManager
from chainstate.utils.ids import generate_session_id
from chainstate.utils.logging import get_logger, log_operation

logger = get_logger("coordination.coordinator")

Clock = Callable[[], datetime]

DEFAULT_MAX_AGENTS = 4

# Store states an in-flight task can be released from
_RELEASABLE = (WorkItemStatus.ASSIGNED, WorkItemStatus.IN_PROGRESS)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TaskCoordinator:
    """Capability- and load-aware distribution of work items to agents.

    Usage:
        coordinator = TaskCoordinator(store, budget, event_bus)
        await coordinator.start("session-...")
        await coordinator.register_agent(AgentConfiguration(agent_id="agent-1", ...))
        await coordinator.add_tasks(items)
        await coordinator.handle_task_completion("agent-1", item.id, success=True)
        await coordinator.stop()
    """

    def __init__(
        self,
        store: GraphStore,
        budget: TokenBudgetManager,
        event_bus: EventBus | None = None,
        max_agents: int = DEFAULT_MAX_AGENTS,
        strategy: DistributionStrategy = DistributionStrategy.CAPABILITY_BASED,
        consider_experience: bool = True,
        balance_load: bool = True,
        clock: Clock | None = None,
    ):
        self.store = store
        self.budget = budget
        self.event_bus = event_bus
        self.max_agents = max_agents
        self.default_strategy = strategy
        self.default_consider_experience = consider_experience
        self.default_balance_load = balance_load
        self.clock: Clock = clock or _utc_now

        self.session_id: str | None = None
        self.strategy = strategy
        self.options = DistributionOptions(consider_experience, balance_load)
        self.statistics = CoordinationStatistics()

        self._configs: dict[str, AgentConfiguration] = {}
        self._statuses: dict[str, AgentStatus] = {}
        self._queue: deque[WorkItem] = deque()
        self._in_flight: dict[str, WorkItem] = {}
        self._assigned_at: dict[str, datetime] = {}
        self._distribution_lock: asyncio.Lock | None = None

    @property
    def active(self) -> bool:
        return self.session_id is not None

    @property
    def claim_holder(self) -> str:
        """Store-side holder name for items waiting in this session's queue."""
        return f"coordinator:{self.session_id}"

    # ========== Session lifecycle ==========

    async def start(
        self,
        session_id: str | None = None,
        strategy: DistributionStrategy | None = None,
        consider_experience: bool | None = None,
        balance_load: bool | None = None,
    ) -> str:
        """Begin a coordination session, replacing any previous one."""
        if self.active:
            await self.stop()

        self.session_id = session_id or generate_session_id()
        self.strategy = strategy or self.default_strategy
        self.options = DistributionOptions(
            self.default_consider_experience if consider_experience is None else consider_experience,
            self.default_balance_load if balance_load is None else balance_load,
        )
        self.statistics = CoordinationStatistics(started_at=self.clock())
        self._configs.clear()
        self._statuses.clear()
        self._queue.clear()
        self._in_flight.clear()
        self._assigned_at.clear()

        log_operation(logger, "Coordination session started", {
            "session_id": self.session_id,
            "strategy": self.strategy.value,
        })
        return self.session_id

    async def stop(self) -> dict[str, Any] | None:
        """Persist the final snapshot and discard the session."""
        if not self.active:
            return None
        session_id = self.session_id

        # Items claimed from the store but never handed out go back to pending
        for task in list(self._queue):
            await self._release(task.id, self.claim_holder)

        snapshot = self.get_coordination_report()
        snapshot["stopped_at"] = self.clock().isoformat()
        await self.store.save_coordination_snapshot(session_id, snapshot)
        await self._publish(TOPIC_COORDINATION_STOPPED, create_coordination_stopped_event(session_id, snapshot))

        log_operation(logger, "Coordination session stopped", {
            "session_id": session_id,
            "completed": self.statistics.completed_tasks,
            "failed": self.statistics.failed_tasks,
        })
        self.session_id = None
        self._configs.clear()
        self._statuses.clear()
        self._queue.clear()
        self._in_flight.clear()
        self._assigned_at.clear()
        return snapshot

    def _require_active(self) -> None:
        if not self.active:
            raise CoreError.validation("No active coordination session")

    # ========== Agents ==========

    async def register_agent(self, config: AgentConfiguration) -> OperationResult:
        """Add an agent, or refuse it once ``max_agents`` are registered.

        Raises:
            CoreError: If no session is active or the id is already registered
        """
        self._require_active()
        if config.agent_id in self._configs:
            raise CoreError.validation(f"Agent already registered: {config.agent_id}", agent_id=config.agent_id)
        if len(self._configs) >= self.max_agents:
            message = f"Cannot register agent {config.agent_id}: maximum of {self.max_agents} agents reached"
            logger.warning(message)
            return OperationResult.fail(ErrorKind.CAPACITY, message, {
                "agent_id": config.agent_id,
                "max_agents": self.max_agents,
            })

        self._configs[config.agent_id] = config
        self._statuses[config.agent_id] = AgentStatus(agent_id=config.agent_id, last_heartbeat=self.clock())
        log_operation(logger, "Agent registered", {
            "agent_id": config.agent_id,
            "capabilities": [c.value for c in config.capabilities],
            "specialization": config.specialization.value,
        })
        await self._publish(TOPIC_AGENT_REGISTERED, create_agent_event(
            config.agent_id, AgentState.AVAILABLE.value, capabilities=[c.value for c in config.capabilities],
        ))
        await self.distribute_tasks()
        return OperationResult.ok(self._statuses[config.agent_id], f"Agent {config.agent_id} registered")

    async def unregister_agent(self, agent_id: str) -> list[str]:
        """Remove an agent and return its tasks to the front of the queue."""
        self._require_active()
        if agent_id not in self._configs:
            raise CoreError.not_found("Agent", agent_id)

        requeued = await self._requeue_agent_tasks(agent_id, reason="unregistered")
        del self._configs[agent_id]
        del self._statuses[agent_id]
        logger.info(f"Agent unregistered: {agent_id}")
        await self._publish(TOPIC_AGENT_UNREGISTERED, create_agent_event(agent_id, "unregistered"))
        await self.distribute_tasks()
        return requeued

    async def record_heartbeat(self, agent_id: str) -> bool:
        """Refresh an agent's heartbeat; a disconnected agent becomes available."""
        status = self._statuses.get(agent_id)
        if status is None:
            return False
        status.last_heartbeat = self.clock()
        if status.status == AgentState.DISCONNECTED:
            status.status = AgentState.AVAILABLE
            logger.info(f"Agent {agent_id} reconnected")
            await self._publish(TOPIC_AGENT_RECONNECTED, create_agent_event(agent_id, AgentState.AVAILABLE.value))
        return True

    async def mark_disconnected(self, agent_id: str, reason: str = "heartbeat timeout") -> list[str]:
        """Flag an agent as disconnected and requeue everything it held."""
        status = self._statuses.get(agent_id)
        if status is None:
            raise CoreError.not_found("Agent", agent_id)
        status.status = AgentState.DISCONNECTED
        requeued = await self._requeue_agent_tasks(agent_id, reason=reason)
        logger.warning(f"Agent {agent_id} disconnected ({reason}); requeued {len(requeued)} tasks")
        await self._publish(TOPIC_AGENT_DISCONNECTED, create_agent_event(
            agent_id, AgentState.DISCONNECTED.value, reason=reason, requeued=requeued,
        ))
        return requeued

    def agent_statuses(self) -> list[AgentStatus]:
        return list(self._statuses.values())

    async def _requeue_agent_tasks(self, agent_id: str, reason: str) -> list[str]:
        status = self._statuses[agent_id]
        task_ids = list(status.current_tasks)
        status.current_tasks.clear()

        requeued: list[WorkItem] = []
        for task_id in task_ids:
            self._assigned_at.pop(task_id, None)
            self._in_flight.pop(task_id, None)
            released = await self._release(task_id, agent_id)
            if released is not None and released.status == WorkItemStatus.PENDING:
                requeued.append(released)

        self._queue.extendleft(reversed(requeued))
        if requeued:
            await self._publish(TOPIC_TASKS_REQUEUED, create_tasks_requeued_event(
                agent_id, [t.id for t in requeued], reason,
            ))
        return [t.id for t in requeued]

    async def _release(self, task_id: str, holder: str) -> WorkItem | None:
        stored = await self.store.get_work_item(task_id)
        if stored is None or stored.status not in _RELEASABLE or stored.assigned_agent != holder:
            return stored
        return await self.store.release_work_item(task_id)

    # ========== Queue ==========

    async def add_tasks(self, tasks: list[WorkItem]) -> int:
        """Queue work items by priority and distribute immediately.

        Items not yet in the store are added to it first. Each item is then
        claimed in the store so no other consumer can dequeue it while it
        waits here; items already taken elsewhere are skipped.

        Returns:
            Number of tasks assigned by the distribution pass
        """
        self._require_active()
        queued = 0
        for task in sorted(tasks, key=lambda t: t.priority):
            if await self.store.get_work_item(task.id) is None:
                await self.store.add_work_item(task)
            claimed = await self.store.claim_work_item(task.id, self.claim_holder)
            if claimed is None:
                logger.warning(f"Skipping task {task.id}: already taken from the store")
                continue
            self._queue.append(claimed)
            queued += 1
        logger.info(f"Added {queued} tasks to coordination queue")
        return await self.distribute_tasks()

    async def pull_pending_work(self, limit: int = 10) -> list[WorkItem]:
        """Dequeue up to ``limit`` pending items from the store and distribute them."""
        self._require_active()
        pulled: list[WorkItem] = []
        while len(pulled) < limit:
            item = await self.store.get_next_work_item(agent_id=self.claim_holder)
            if item is None:
                break
            pulled.append(item)
        queued_ids = {t.id for t in self._queue}
        self._queue.extend(item for item in pulled if item.id not in queued_ids)
        if pulled:
            await self.distribute_tasks()
        return pulled

    @property
    def pending_tasks(self) -> list[WorkItem]:
        return list(self._queue)

    # ========== Distribution ==========

    def _lock(self) -> asyncio.Lock:
        if self._distribution_lock is None:
            self._distribution_lock = asyncio.Lock()
        return self._distribution_lock

    async def distribute_tasks(self) -> int:
        """Run one distribution pass with the session's strategy."""
        if not self.active or not self._queue:
            return 0

        async with self._lock():
            slots = [AgentSlot(self._configs[a], self._statuses[a]) for a in self._configs]
            if not any(slot.has_capacity for slot in slots):
                logger.debug("No available agents for task distribution")
                return 0

            plan = build_plan(self.strategy, list(self._queue), slots, self.options)
            distributed = 0
            for task, agent_id in plan.assignments:
                if await self._assign(task, agent_id):
                    distributed += 1

        if distributed:
            self.statistics.tasks_distributed += distributed
            logger.info(f"Distributed {distributed} tasks using {self.strategy.value}")
        return distributed

    async def _assign(self, task: WorkItem, agent_id: str) -> bool:
        self._queue.remove(task)
        try:
            assigned = await self.store.assign_work_item(task.id, agent_id, claimed_by=self.claim_holder)
        except CoreError as exc:
            # Finished or taken elsewhere; nothing left to hand out
            logger.warning(f"Dropping task {task.id} from queue: {exc.message}")
            return False

        status = self._statuses[agent_id]
        status.current_tasks.append(task.id)
        if len(status.current_tasks) >= self._configs[agent_id].max_concurrent_tasks:
            status.status = AgentState.BUSY
        self._in_flight[task.id] = assigned
        self._assigned_at[task.id] = self.clock()

        logger.debug(
            f"Task {task.id} assigned to {agent_id} (estimated {self.budget.estimate(assigned)} tokens)"
        )
        await self._publish(TOPIC_TASK_ASSIGNED, create_task_assigned_event(task.id, agent_id, self.strategy.value))
        return True

    # ========== Completion ==========

    async def handle_task_completion(
        self,
        agent_id: str,
        task_id: str,
        success: bool,
        error: str | None = None,
    ) -> AgentStatus:
        """Record a finished task, persist its outcome, and distribute again.

        Raises:
            CoreError: If the agent is unknown or does not hold the task
        """
        self._require_active()
        status = self._statuses.get(agent_id)
        if status is None:
            raise CoreError.not_found("Agent", agent_id)
        if task_id not in status.current_tasks:
            raise CoreError.validation(
                f"Task {task_id} is not assigned to agent {agent_id}",
                agent_id=agent_id,
                task_id=task_id,
            )

        now = self.clock()
        status.current_tasks.remove(task_id)
        self._in_flight.pop(task_id, None)
        started = self._assigned_at.pop(task_id, now)
        duration = max((now - started).total_seconds(), 0.0)

        if success:
            status.completed_tasks += 1
            self.statistics.completed_tasks += 1
        else:
            status.failed_tasks += 1
            self.statistics.failed_tasks += 1

        performance = status.performance
        if status.total_tasks == 1:
            performance.average_task_duration = duration
        else:
            performance.average_task_duration = (performance.average_task_duration + duration) / 2
        performance.success_rate = status.completed_tasks / status.total_tasks
        elapsed = (now - self.statistics.started_at).total_seconds()
        performance.throughput = status.completed_tasks / elapsed if elapsed > 0 else 0.0

        finished = self.statistics.completed_tasks + self.statistics.failed_tasks
        if finished == 1:
            self.statistics.average_completion_time = duration
        else:
            self.statistics.average_completion_time = (self.statistics.average_completion_time + duration) / 2

        if status.status == AgentState.BUSY:
            status.status = AgentState.AVAILABLE

        await self.store.update_work_item_status(
            task_id,
            WorkItemStatus.COMPLETED if success else WorkItemStatus.FAILED,
            error_message=None if success else (error or "Task failed"),
        )
        logger.info(f"Task {task_id} {'completed' if success else 'failed'} by {agent_id} in {duration:.2f}s")
        await self._publish(TOPIC_TASK_COMPLETED, create_task_completed_event(
            task_id, agent_id, success, duration, error,
        ))

        await self.distribute_tasks()
        return status

    # ========== Reporting ==========

    def get_statistics(self) -> CoordinationStatistics:
        stats = self.statistics
        statuses = list(self._statuses.values())
        active = [s for s in statuses if s.status in (AgentState.AVAILABLE, AgentState.BUSY)]
        loads = [len(s.current_tasks) / self._configs[s.agent_id].max_concurrent_tasks for s in statuses]
        finished = stats.completed_tasks + stats.failed_tasks

        stats.total_agents = len(statuses)
        stats.active_agents = len(active)
        stats.pending_tasks = len(self._queue)
        stats.in_flight_tasks = len(self._in_flight)
        stats.average_load = sum(loads) / len(loads) if loads else 0.0
        stats.parallelism_efficiency = (
            (stats.completed_tasks / finished) * (len(active) / len(statuses))
            if finished and statuses else 0.0
        )
        return stats

    def get_agent_details(self, agent_id: str | None = None) -> list[dict[str, Any]]:
        """Configuration and live status for one agent, or all of them."""
        if agent_id is not None and agent_id not in self._configs:
            raise CoreError.not_found("Agent", agent_id)
        ids = [agent_id] if agent_id is not None else list(self._configs)
        return [
            {
                "config": self._configs[a].model_dump(mode="json"),
                "status": self._statuses[a].model_dump(mode="json"),
            }
            for a in ids
        ]

    def get_coordination_report(self) -> dict[str, Any]:
        stats = self.get_statistics()
        return {
            "session_id": self.session_id,
            "strategy": self.strategy.value,
            "options": {
                "consider_experience": self.options.consider_experience,
                "balance_load": self.options.balance_load,
            },
            "statistics": stats.model_dump(mode="json"),
            "agents": self.get_agent_details(),
            "queue": {
                "pending": len(self._queue),
                "in_progress": stats.in_flight_tasks,
                "completed": stats.completed_tasks,
                "failed": stats.failed_tasks,
                "pending_task_ids": [t.id for t in self._queue],
                "estimated_pending_tokens": self.budget.estimate(list(self._queue)),
            },
        }

    async def _publish(self, topic: str, payload: EventPayload) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(topic, payload)
