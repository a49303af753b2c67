"""
ID generation utilities for chainstate.

Sessions use random UUIDs; work items, checkpoints, and relationships use
sortable ``{prefix}-{timestamp}-{counter}`` identifiers.
"""

from __future__ import annotations

import re
import threading
import time
import uuid

SESSION_ID_PATTERN = re.compile(
    r"^session-[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)
RECORD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class _ThreadSafeCounter:
    """Thread-safe incrementing counter."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0


_counter = _ThreadSafeCounter()


# ============================================================================
# ID Generation Functions
# ============================================================================


def generate_id(prefix: str) -> str:
    """Generate a unique identifier.

    Example:
        >>> generate_id("wi")
        "wi-1704067200123-001"
    """
    timestamp = int(time.time() * 1000)
    return f"{prefix}-{timestamp}-{_counter.next():03d}"


def generate_session_id() -> str:
    return f"session-{uuid.uuid4()}"


def generate_work_item_id() -> str:
    return generate_id("wi")


def generate_checkpoint_id() -> str:
    return generate_id("cp")


def generate_relationship_id(from_id: str, to_id: str, relationship_type: str) -> str:
    """Deterministic id for an edge so re-adding the same edge overwrites it."""
    return f"{from_id}--{relationship_type.lower()}--{to_id}"


# ============================================================================
# Validation
# ============================================================================


def is_valid_session_id(session_id: str) -> bool:
    return bool(SESSION_ID_PATTERN.match(session_id or ""))


def is_valid_record_id(record_id: str) -> bool:
    """Record ids become file names, so only a safe character set is allowed."""
    if not record_id or record_id in (".", ".."):
        return False
    return bool(RECORD_ID_PATTERN.match(record_id))


def reset_counter() -> None:
    """Reset the ID counter (for testing only)."""
    _counter.reset()
