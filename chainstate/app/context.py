"""
chainstate Application Context.

Builds every component once from a ``ChainStateConfig`` and owns their
lifecycle. There are no module-level singletons; callers pass the context
(or the components they need) explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from chainstate.app.config import ChainStateConfig
from chainstate.core.event_bus import EventBus
from chainstate.domain.coordination import HeartbeatMonitor, TaskCoordinator
from chainstate.domain.coordination.coordinator import Clock
from chainstate.domain.graph import GraphStore
from chainstate.domain.recovery import BackupArchive, RecoveryOrchestrator
from chainstate.domain.tokens import CompressionEngine, TokenBudgetManager
from chainstate.domain.tokens.budget import TokenCounter
from chainstate.utils.logging import get_logger

logger = get_logger("app.context")


# ============================================================================
# Application Context
# ============================================================================


@dataclass
class ChainStateContext:
    """Runtime container for the store, budget, recovery, and coordination systems.

    Usage:
        context = ChainStateContext.create(config)
        await context.start()
        await context.store.add_entity(entity)
        await context.close()
    """

    config: ChainStateConfig
    store: GraphStore
    budget: TokenBudgetManager
    compression: CompressionEngine
    archive: BackupArchive
    recovery: RecoveryOrchestrator
    event_bus: EventBus
    coordinator: TaskCoordinator
    monitor: HeartbeatMonitor
    started: bool = field(default=False, repr=False)

    @classmethod
    def create(
        cls,
        config: ChainStateConfig,
        counter: TokenCounter | None = None,
        clock: Clock | None = None,
    ) -> "ChainStateContext":
        """Wire all components from configuration.

        Args:
            config: chainstate configuration
            counter: Optional exact token counter preferred over the char ratio
            clock: Optional clock for the coordinator and heartbeat monitor
        """
        tokens = config.tokens
        budget = TokenBudgetManager(tokens.thresholds(), tokens.chars_per_token, counter)
        compression = CompressionEngine(
            budget,
            max_entities_per_type=tokens.max_entities_per_type,
            preserve_types=tokens.preserve_types,
            critical_relationship_types=tokens.critical_relationship_types,
        )
        store = GraphStore(config.state_dir, config.cache.max_size, config.cache.cleanup_buffer)
        archive = BackupArchive(config.state_dir, budget)
        recovery = RecoveryOrchestrator(
            archive,
            budget,
            compression,
            metadata_token_limit=config.recovery.metadata_token_limit,
            estimated_tokens_per_entity=config.recovery.estimated_tokens_per_entity,
            min_page_size=config.recovery.min_page_size,
            priority_types=config.recovery.priority_types,
            reduction_factors=config.recovery.detail_reduction_factors,
            target_reduction=tokens.target_reduction,
        )
        event_bus = EventBus()
        coordination = config.coordination
        coordinator = TaskCoordinator(
            store,
            budget,
            event_bus,
            max_agents=coordination.max_agents,
            strategy=coordination.default_strategy,
            consider_experience=coordination.consider_experience,
            balance_load=coordination.balance_load,
            clock=clock,
        )
        monitor = HeartbeatMonitor(
            coordinator,
            interval=coordination.heartbeat_interval,
            timeout=coordination.heartbeat_timeout,
        )
        return cls(
            config=config,
            store=store,
            budget=budget,
            compression=compression,
            archive=archive,
            recovery=recovery,
            event_bus=event_bus,
            coordinator=coordinator,
            monitor=monitor,
        )

    # ========== Lifecycle ==========

    async def start(self) -> None:
        """Create the state directories."""
        if self.started:
            return
        await self.store.initialize()
        self.started = True
        logger.info(f"chainstate context started at {self.config.state_dir}")

    async def close(self) -> None:
        """Stop coordination, flush pending events, and release caches."""
        await self.monitor.stop()
        if self.coordinator.active:
            await self.coordinator.stop()
        await self.event_bus.drain()
        self.event_bus.clear()
        self.store.compact_caches()
        self.started = False
        logger.info("chainstate context closed")

    async def __aenter__(self) -> "ChainStateContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
