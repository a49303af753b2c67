"""
Token budget management.

Estimates the serialized cost of strings and records and classifies a usage
figure against a budget. Collections cost the sum of their items, so a
subset never costs more than the set it came from.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

from pydantic import BaseModel

from chainstate.core.models import TokenThresholds
from chainstate.utils.logging import get_logger

logger = get_logger("tokens.budget")

TokenCounter = Callable[[str], int]

DEFAULT_CHARS_PER_TOKEN = 4


class UsageBand(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    COMPRESS = "compress"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class TokenUsage:
    current_tokens: int
    max_tokens: int
    band: UsageBand

    @property
    def usage_fraction(self) -> float:
        return self.current_tokens / self.max_tokens if self.max_tokens else 1.0

    @property
    def available_tokens(self) -> int:
        return max(0, self.max_tokens - self.current_tokens)


# ============================================================================
# Pure classification
# ============================================================================


def classify_usage(current_tokens: int, max_tokens: int, thresholds: TokenThresholds) -> UsageBand:
    if current_tokens >= max_tokens * thresholds.emergency:
        return UsageBand.EMERGENCY
    if current_tokens >= max_tokens * thresholds.compression_trigger:
        return UsageBand.COMPRESS
    if current_tokens >= max_tokens * thresholds.warning:
        return UsageBand.WARNING
    return UsageBand.NORMAL


def should_summarize_context(current_tokens: int, max_tokens: int, thresholds: TokenThresholds) -> bool:
    return current_tokens >= max_tokens * thresholds.compression_trigger


def is_critical(current_tokens: int, max_tokens: int, thresholds: TokenThresholds) -> bool:
    return current_tokens >= max_tokens * thresholds.emergency


# ============================================================================
# Budget Manager
# ============================================================================


class TokenBudgetManager:
    """Estimates costs and applies thresholds for one budget configuration.

    When an exact ``counter`` is supplied it is always used; the
    characters-per-token ratio is only a fallback for when it raises.
    """

    def __init__(
        self,
        thresholds: TokenThresholds | None = None,
        chars_per_token: int = DEFAULT_CHARS_PER_TOKEN,
        counter: TokenCounter | None = None,
    ):
        if chars_per_token < 1:
            raise ValueError("chars_per_token must be >= 1")
        self.thresholds = thresholds or TokenThresholds()
        self.chars_per_token = chars_per_token
        self.counter = counter
        self._counter_failures = 0

    @property
    def max_tokens(self) -> int:
        return self.thresholds.max_tokens

    # ========== Estimation ==========

    def estimate_text(self, text: str) -> int:
        if not text:
            return 0
        if self.counter is not None:
            try:
                return max(0, int(self.counter(text)))
            except Exception as exc:
                self._counter_failures += 1
                logger.warning(f"Token counter failed, using character estimate: {exc}")
        return math.ceil(len(text) / self.chars_per_token)

    def estimate(self, payload: Any) -> int:
        """Cost of a string, record, mapping, or collection of those."""
        if payload is None:
            return 0
        if isinstance(payload, str):
            return self.estimate_text(payload)
        if isinstance(payload, BaseModel):
            return self.estimate_text(payload.model_dump_json())
        if isinstance(payload, (list, tuple, set, frozenset)):
            return sum(self.estimate(item) for item in payload)
        return self.estimate_text(json.dumps(payload, separators=(",", ":"), default=str))

    def estimate_set(
        self,
        entities: Iterable[BaseModel] = (),
        relationships: Iterable[BaseModel] = (),
        additional_context: str = "",
    ) -> int:
        return (
            sum(self.estimate(e) for e in entities)
            + sum(self.estimate(r) for r in relationships)
            + self.estimate_text(additional_context)
        )

    def measure(
        self,
        entities: Iterable[BaseModel] = (),
        relationships: Iterable[BaseModel] = (),
        additional_context: str = "",
        max_tokens: int | None = None,
    ) -> TokenUsage:
        budget = max_tokens or self.max_tokens
        current = self.estimate_set(entities, relationships, additional_context)
        return TokenUsage(current, budget, self.classify(current, budget))

    # ========== Thresholds ==========

    def classify(self, current_tokens: int, max_tokens: int | None = None) -> UsageBand:
        return classify_usage(current_tokens, max_tokens or self.max_tokens, self.thresholds)

    def should_summarize_context(self, current_tokens: int, max_tokens: int | None = None) -> bool:
        return should_summarize_context(current_tokens, max_tokens or self.max_tokens, self.thresholds)

    def is_critical(self, current_tokens: int, max_tokens: int | None = None) -> bool:
        return is_critical(current_tokens, max_tokens or self.max_tokens, self.thresholds)

    def is_warning(self, current_tokens: int, max_tokens: int | None = None) -> bool:
        return current_tokens >= (max_tokens or self.max_tokens) * self.thresholds.warning
