"""
chainstate Configuration.

Dataclass configuration for the graph store, token budget, recovery, and
coordination components. A config is built once and handed to
``ChainStateContext``; nothing reads it globally.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from chainstate.core.models import (
    DEFAULT_CRITICAL_RELATIONSHIPS,
    DistributionStrategy,
    RelationshipType,
    TokenThresholds,
)

STATE_DIR_ENV = "CHAINSTATE_STATE_DIR"
CONFIG_FILENAME = "chainstate_config.json"


def get_default_state_dir() -> Path:
    """State root from ``CHAINSTATE_STATE_DIR``, else ``./.chainstate``."""
    if env_path := os.environ.get(STATE_DIR_ENV):
        return Path(env_path)
    return Path.cwd() / ".chainstate"


# ============================================================================
# Configuration Classes
# ============================================================================


@dataclass
class CacheConfig:
    """In-memory cache bounds for each graph store namespace."""

    max_size: int = 10_000
    cleanup_buffer: int = 100  # Headroom freed below max_size by compaction

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheConfig":
        return cls(**{k: v for k, v in data.items() if hasattr(cls, k)})

    def to_dict(self) -> dict[str, Any]:
        return {"max_size": self.max_size, "cleanup_buffer": self.cleanup_buffer}


@dataclass
class TokenConfig:
    """Token budget, band thresholds, and compression defaults."""

    max_tokens: int = 128_000
    chars_per_token: int = 4
    warning_threshold: float = 0.8
    compression_threshold: float = 0.9
    emergency_threshold: float = 0.95
    cache_eviction_threshold: float = 0.8
    max_entities_per_type: int = 20
    target_reduction: float = 70.0
    preserve_types: list[str] = field(default_factory=list)
    critical_relationship_types: list[RelationshipType] = field(
        default_factory=lambda: list(DEFAULT_CRITICAL_RELATIONSHIPS)
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenConfig":
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "critical_relationship_types" in values:
            values["critical_relationship_types"] = [
                RelationshipType(str(t).upper()) for t in values["critical_relationship_types"]
            ]
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_tokens": self.max_tokens,
            "chars_per_token": self.chars_per_token,
            "warning_threshold": self.warning_threshold,
            "compression_threshold": self.compression_threshold,
            "emergency_threshold": self.emergency_threshold,
            "cache_eviction_threshold": self.cache_eviction_threshold,
            "max_entities_per_type": self.max_entities_per_type,
            "target_reduction": self.target_reduction,
            "preserve_types": list(self.preserve_types),
            "critical_relationship_types": [t.value for t in self.critical_relationship_types],
        }

    def thresholds(self) -> TokenThresholds:
        return TokenThresholds(
            max_tokens=self.max_tokens,
            warning=self.warning_threshold,
            compression_trigger=self.compression_threshold,
            emergency=self.emergency_threshold,
            cache_eviction=self.cache_eviction_threshold,
        )


@dataclass
class RecoveryConfig:
    """Limits and preferences for context recovery."""

    metadata_token_limit: int = 50_000
    estimated_tokens_per_entity: int = 100
    min_page_size: int = 5
    priority_types: list[str] = field(
        default_factory=lambda: ["controller", "service", "interface", "component"]
    )
    detail_reduction_factors: list[float] = field(default_factory=lambda: [0.8, 0.6, 0.4])

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecoveryConfig":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata_token_limit": self.metadata_token_limit,
            "estimated_tokens_per_entity": self.estimated_tokens_per_entity,
            "min_page_size": self.min_page_size,
            "priority_types": list(self.priority_types),
            "detail_reduction_factors": list(self.detail_reduction_factors),
        }


@dataclass
class CoordinationConfig:
    """Agent limits, heartbeat timing, and default distribution."""

    max_agents: int = 4
    heartbeat_interval: float = 60.0  # Seconds between staleness checks
    heartbeat_timeout: float = 300.0  # Silence before an agent is disconnected
    default_strategy: DistributionStrategy = DistributionStrategy.CAPABILITY_BASED
    consider_experience: bool = True
    balance_load: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CoordinationConfig":
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if "default_strategy" in values:
            values["default_strategy"] = DistributionStrategy(values["default_strategy"])
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_agents": self.max_agents,
            "heartbeat_interval": self.heartbeat_interval,
            "heartbeat_timeout": self.heartbeat_timeout,
            "default_strategy": self.default_strategy.value,
            "consider_experience": self.consider_experience,
            "balance_load": self.balance_load,
        }


@dataclass
class ChainStateConfig:
    """Main configuration for chainstate.

    Aggregates all sub-configurations and provides load/save functionality.
    """

    state_dir: Path = field(default_factory=get_default_state_dir)

    # Sub-configs
    cache: CacheConfig = field(default_factory=CacheConfig)
    tokens: TokenConfig = field(default_factory=TokenConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    enable_debug_logging: bool = False

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.enable_debug_logging else self.log_level

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "ChainStateConfig":
        """Load configuration from a JSON file.

        Args:
            config_path: Path to config file. If None, uses
                ``{state_dir}/chainstate_config.json``.

        Returns:
            ChainStateConfig instance (defaults when the file is missing)
        """
        if config_path is None:
            config_path = get_default_state_dir() / CONFIG_FILENAME

        config_path = Path(config_path)

        if not config_path.exists():
            return cls()

        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChainStateConfig":
        """Create config from dictionary."""
        return cls(
            state_dir=Path(data.get("state_dir", get_default_state_dir())),
            cache=CacheConfig.from_dict(data.get("cache", {})),
            tokens=TokenConfig.from_dict(data.get("tokens", {})),
            recovery=RecoveryConfig.from_dict(data.get("recovery", {})),
            coordination=CoordinationConfig.from_dict(data.get("coordination", {})),
            log_level=data.get("log_level", "INFO"),
            enable_debug_logging=data.get("enable_debug_logging", False),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "state_dir": str(self.state_dir),
            "cache": self.cache.to_dict(),
            "tokens": self.tokens.to_dict(),
            "recovery": self.recovery.to_dict(),
            "coordination": self.coordination.to_dict(),
            "log_level": self.log_level,
            "enable_debug_logging": self.enable_debug_logging,
        }

    def save(self, config_path: str | Path | None = None) -> Path:
        """Save configuration to a JSON file.

        Returns:
            Path to saved file
        """
        if config_path is None:
            config_path = self.state_dir / CONFIG_FILENAME

        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

        return config_path
