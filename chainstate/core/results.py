"""
Error kinds and structured operation results.

Core components raise ``CoreError`` for validation and not-found conditions
and let ``OSError`` from storage propagate. The operations boundary converts
all of them into an ``OperationResult`` so nothing is thrown past it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """Classification of a failed operation."""
    VALIDATION = "validation"    # Malformed or missing input; never retried
    NOT_FOUND = "not_found"      # Missing session/entity/work item
    STORAGE_IO = "storage_io"    # Disk failure or unreadable record
    CANCELLED = "cancelled"      # Cooperative abort
    CAPACITY = "capacity"        # Agent registration refused


class CoreError(Exception):
    """Single exception type for expected core failures, tagged by kind."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}

    @classmethod
    def validation(cls, message: str, **details: Any) -> "CoreError":
        return cls(ErrorKind.VALIDATION, message, details)

    @classmethod
    def not_found(cls, what: str, record_id: str) -> "CoreError":
        return cls(ErrorKind.NOT_FOUND, f"{what} not found: {record_id}", {"id": record_id})


class OperationResult(BaseModel):
    """Outcome of a boundary operation."""

    success: bool
    message: str = ""
    kind: ErrorKind | None = Field(default=None, description="Set when success is False")
    data: Any = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, message: str = "") -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> "OperationResult":
        return cls(success=False, kind=kind, message=message, details=details or {})

    @classmethod
    def from_error(cls, error: CoreError) -> "OperationResult":
        return cls.fail(error.kind, error.message, error.details)
