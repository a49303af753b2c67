"""chainstate: durable discovery-graph state with token-bounded recovery."""

from .core.event_bus import EventBus
from .core.results import CoreError, ErrorKind, OperationResult

__version__ = "1.0.0"

__all__ = ["CoreError", "ErrorKind", "EventBus", "OperationResult", "__version__"]
