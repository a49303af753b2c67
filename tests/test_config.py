"""Tests for chainstate configuration loading and saving."""

from pathlib import Path

from chainstate.app.config import (
    CONFIG_FILENAME,
    STATE_DIR_ENV,
    ChainStateConfig,
    get_default_state_dir,
)
from chainstate.core.models import DistributionStrategy, RelationshipType


def test_defaults():
    config = ChainStateConfig(state_dir=Path("/tmp/chainstate-test"))

    assert config.cache.max_size == 10_000
    assert config.tokens.max_tokens == 128_000
    assert config.coordination.max_agents == 4
    assert config.coordination.heartbeat_timeout == 300.0
    assert config.coordination.default_strategy == DistributionStrategy.CAPABILITY_BASED
    assert config.effective_log_level == "INFO"


def test_state_dir_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv(STATE_DIR_ENV, str(tmp_path))
    assert get_default_state_dir() == tmp_path


def test_save_and_load_round_trip(tmp_path):
    config = ChainStateConfig(state_dir=tmp_path)
    config.tokens.max_tokens = 64_000
    config.tokens.preserve_types = ["Controller"]
    config.coordination.default_strategy = DistributionStrategy.ROUND_ROBIN
    config.enable_debug_logging = True

    path = config.save()
    assert path == tmp_path / CONFIG_FILENAME

    loaded = ChainStateConfig.load(path)
    assert loaded.state_dir == tmp_path
    assert loaded.tokens.max_tokens == 64_000
    assert loaded.tokens.preserve_types == ["Controller"]
    assert loaded.coordination.default_strategy == DistributionStrategy.ROUND_ROBIN
    assert loaded.effective_log_level == "DEBUG"


def test_missing_file_gives_defaults(tmp_path):
    config = ChainStateConfig.load(tmp_path / "absent.json")
    assert config.recovery.min_page_size == 5


def test_partial_dict_and_unknown_keys():
    config = ChainStateConfig.from_dict({
        "state_dir": "/tmp/state",
        "cache": {"max_size": 50, "bogus": 1},
        "tokens": {"critical_relationship_types": ["calls", "uses"]},
    })

    assert config.state_dir == Path("/tmp/state")
    assert config.cache.max_size == 50
    assert config.cache.cleanup_buffer == 100
    assert config.tokens.critical_relationship_types == [RelationshipType.CALLS, RelationshipType.USES]


def test_thresholds_follow_token_config():
    config = ChainStateConfig(state_dir=Path("/tmp/chainstate-test"))
    config.tokens.max_tokens = 1000
    config.tokens.compression_threshold = 0.85

    thresholds = config.tokens.thresholds()
    assert thresholds.max_tokens == 1000
    assert thresholds.compression_trigger == 0.85
