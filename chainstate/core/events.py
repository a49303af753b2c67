"""Event topics and payload builders published by the coordinator."""

from __future__ import annotations

from typing import Any, Dict, List

from .event_bus import EventPayload

# Coordination
TOPIC_AGENT_REGISTERED = "agent.registered"
TOPIC_AGENT_UNREGISTERED = "agent.unregistered"
TOPIC_AGENT_DISCONNECTED = "agent.disconnected"
TOPIC_AGENT_RECONNECTED = "agent.reconnected"
TOPIC_TASK_ASSIGNED = "task.assigned"
TOPIC_TASK_COMPLETED = "task.completed"
TOPIC_TASKS_REQUEUED = "task.requeued"
TOPIC_COORDINATION_STOPPED = "coordination.stopped"


def create_agent_event(agent_id: str, status: str, **extra: Any) -> EventPayload:
    return {"agent_id": agent_id, "status": status, **extra}


def create_task_assigned_event(task_id: str, agent_id: str, strategy: str) -> EventPayload:
    return {
        "task_id": task_id,
        "agent_id": agent_id,
        "strategy": strategy,
    }


def create_task_completed_event(
    task_id: str,
    agent_id: str,
    success: bool,
    duration_seconds: float,
    error: str | None = None,
) -> EventPayload:
    return {
        "task_id": task_id,
        "agent_id": agent_id,
        "success": success,
        "duration_seconds": duration_seconds,
        "error": error,
    }


def create_tasks_requeued_event(agent_id: str, task_ids: List[str], reason: str) -> EventPayload:
    """Tasks returned to the front of the pending queue."""
    return {
        "agent_id": agent_id,
        "task_ids": list(task_ids),
        "reason": reason,
    }


def create_coordination_stopped_event(session_id: str, snapshot: Dict[str, Any]) -> EventPayload:
    return {
        "session_id": session_id,
        "snapshot": snapshot,
    }
