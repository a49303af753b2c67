"""Token estimation, budget bands, and compression."""

from chainstate.domain.tokens.budget import TokenBudgetManager, TokenUsage, UsageBand
from chainstate.domain.tokens.compression import (
    CompressionEngine,
    CompressionReport,
    CompressionResult,
)

__all__ = [
    "CompressionEngine",
    "CompressionReport",
    "CompressionResult",
    "TokenBudgetManager",
    "TokenUsage",
    "UsageBand",
]
