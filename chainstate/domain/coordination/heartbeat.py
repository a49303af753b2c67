"""
Heartbeat monitoring for coordinated agents.

Runs as an asyncio task on a fixed interval. Agents silent for longer than
the timeout are marked disconnected and their in-flight tasks return to the
front of the coordinator's queue.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

from chainstate.core.models import AgentState
from chainstate.domain.coordination.coordinator import Clock, TaskCoordinator
from chainstate.utils.logging import get_logger, log_error

logger = get_logger("coordination.heartbeat")

DEFAULT_INTERVAL_SECONDS = 60.0
DEFAULT_TIMEOUT_SECONDS = 300.0


class HeartbeatMonitor:
    """Periodic staleness check over a coordinator's agents.

    Usage:
        monitor = HeartbeatMonitor(coordinator, interval=60, timeout=300)
        monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        coordinator: TaskCoordinator,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Clock | None = None,
    ):
        self.coordinator = coordinator
        self.interval = interval
        self.timeout = timeout
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def now(self) -> datetime:
        return (self._clock or self.coordinator.clock)()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="chainstate-heartbeat")
        logger.debug(f"Heartbeat monitor started (interval {self.interval}s, timeout {self.timeout}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Heartbeat monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
            except Exception as exc:
                # Keep monitoring; one failed pass must not stop detection
                log_error(logger, "Heartbeat check", exc)

    async def check(self) -> list[str]:
        """Disconnect every stale agent.

        Returns:
            Ids of the agents marked disconnected by this pass
        """
        if not self.coordinator.active:
            return []
        now = self.now()
        stale = [
            status.agent_id
            for status in self.coordinator.agent_statuses()
            if status.status != AgentState.DISCONNECTED
            and (now - status.last_heartbeat).total_seconds() > self.timeout
        ]
        for agent_id in stale:
            await self.coordinator.mark_disconnected(agent_id, reason="heartbeat timeout")
        return stale
