"""Tests for the chainstate command line."""

import json

from typer.testing import CliRunner

from chainstate.app.main import app

runner = CliRunner()


def test_init_creates_session(tmp_path):
    result = runner.invoke(app, ["init", "--task", "Map the checkout flow", "--state-dir", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "Session Created" in result.output
    assert len(list((tmp_path / "sessions").glob("session-*.json"))) == 1


def test_init_saves_config(tmp_path):
    result = runner.invoke(app, ["init", "--save-config", "--state-dir", str(tmp_path)])

    assert result.exit_code == 0, result.output
    saved = json.loads((tmp_path / "chainstate_config.json").read_text(encoding="utf-8"))
    assert saved["coordination"]["max_agents"] == 4


def test_stats_on_empty_state(tmp_path):
    result = runner.invoke(app, ["stats", "--state-dir", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "Work Queue" in result.output


def test_report_for_unknown_session_fails(tmp_path):
    result = runner.invoke(app, ["report", "session-missing", "--state-dir", str(tmp_path)])

    assert result.exit_code == 1
    assert "not_found" in result.output


def test_recover_without_backups(tmp_path):
    result = runner.invoke(app, ["recover", "session-missing", "--strategy", "progressive", "--state-dir", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "Recovery" in result.output
