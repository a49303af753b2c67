"""
chainstate App - configuration, component wiring, and the operations boundary.
"""

from chainstate.app.config import (
    CacheConfig,
    ChainStateConfig,
    CoordinationConfig,
    RecoveryConfig,
    TokenConfig,
)
from chainstate.app.context import ChainStateContext
from chainstate.app.operations import CoreOperations

__all__ = [
    # Config
    "CacheConfig",
    "ChainStateConfig",
    "CoordinationConfig",
    "RecoveryConfig",
    "TokenConfig",
    # Runtime
    "ChainStateContext",
    "CoreOperations",
]
