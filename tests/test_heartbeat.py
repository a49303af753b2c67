"""Heartbeat Monitor Tests.

Tests for stale-agent detection, task reassignment on disconnect, and the
monitor's background task lifecycle.
"""

import asyncio
import tempfile
import unittest
from datetime import UTC, datetime, timedelta

from chainstate.core.models import AgentConfiguration, AgentState, WorkItem, WorkItemStatus, WorkItemType
from chainstate.domain.coordination import HeartbeatMonitor, TaskCoordinator
from chainstate.domain.graph import GraphStore
from chainstate.domain.tokens import TokenBudgetManager


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class HeartbeatMonitorTest(unittest.IsolatedAsyncioTestCase):
    """Test HeartbeatMonitor with a controllable clock."""

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = GraphStore(self._tmp.name)
        await self.store.initialize()
        self.clock = FakeClock()
        self.coordinator = TaskCoordinator(self.store, TokenBudgetManager(), clock=self.clock)
        self.monitor = HeartbeatMonitor(self.coordinator, interval=60, timeout=300)
        await self.coordinator.start("session-heartbeat")

        await self.coordinator.register_agent(AgentConfiguration(agent_id="agent-1"))
        self.item = WorkItem(entity_id="OrderService", task_type=WorkItemType.ANALYZE_ENTITY)
        await self.coordinator.add_tasks([self.item])

    async def asyncTearDown(self) -> None:
        await self.monitor.stop()
        self._tmp.cleanup()

    def _status(self):
        return self.coordinator.agent_statuses()[0]

    async def test_silent_agent_loses_its_tasks(self) -> None:
        """Test that after 301 silent seconds the task returns to the queue front."""
        self.assertEqual(self._status().current_tasks, [self.item.id])

        self.clock.advance(301)
        stale = await self.monitor.check()

        self.assertEqual(stale, ["agent-1"])
        self.assertEqual(self._status().status, AgentState.DISCONNECTED)
        self.assertEqual(self._status().current_tasks, [])
        self.assertEqual(self.coordinator.pending_tasks[0].id, self.item.id)

        stored = await self.store.get_work_item(self.item.id)
        self.assertEqual(stored.status, WorkItemStatus.PENDING)
        self.assertIsNone(stored.assigned_agent)

    async def test_disconnected_agent_not_checked_again(self) -> None:
        self.clock.advance(301)
        await self.monitor.check()
        self.clock.advance(301)
        self.assertEqual(await self.monitor.check(), [])

    async def test_heartbeat_restores_agent(self) -> None:
        self.clock.advance(301)
        await self.monitor.check()

        self.assertTrue(await self.coordinator.record_heartbeat("agent-1"))
        self.assertEqual(self._status().status, AgentState.AVAILABLE)
        self.assertEqual(self._status().last_heartbeat, self.clock.now)

    async def test_agent_within_timeout_stays_connected(self) -> None:
        self.clock.advance(200)
        await self.coordinator.record_heartbeat("agent-1")
        self.clock.advance(200)

        self.assertEqual(await self.monitor.check(), [])
        self.assertNotEqual(self._status().status, AgentState.DISCONNECTED)
        self.assertEqual(self._status().current_tasks, [self.item.id])

    async def test_inactive_coordinator_is_ignored(self) -> None:
        await self.coordinator.stop()
        self.clock.advance(1000)
        self.assertEqual(await self.monitor.check(), [])

    async def test_background_loop_runs_checks(self) -> None:
        monitor = HeartbeatMonitor(self.coordinator, interval=0.01, timeout=300)
        self.clock.advance(301)

        monitor.start()
        self.assertTrue(monitor.running)
        for _ in range(100):
            if self._status().status == AgentState.DISCONNECTED:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        self.assertFalse(monitor.running)
        self.assertEqual(self._status().status, AgentState.DISCONNECTED)


if __name__ == "__main__":
    unittest.main()
