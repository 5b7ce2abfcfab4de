from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from support import (
    FakeUsageSource,
    fake_agent_command,
    read_tasks,
    window_snapshot,
    write_tasks,
)

from quota_burn.main import quota_burn

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Commands"),
]


@pytest.fixture()
def usage(monkeypatch) -> FakeUsageSource:
    source = FakeUsageSource(window_snapshot(0.3))
    monkeypatch.setattr("quota_burn.controllers.build_usage_source", lambda settings: source)
    return source


@pytest.fixture()
def tasks_file(tmp_path: Path) -> Path:
    return write_tasks(
        tmp_path / "tasks.json",
        [
            {"id": "t1", "name": "Docs", "prompt": "Write docs", "status": "on", "priority": 1},
            {"id": "t2", "name": "Lint", "prompt": "Fix lint", "status": "off"},
            {"id": "t3", "name": "Old", "prompt": "Done already", "status": "done"},
        ],
    )


def _invoke(tmp_path: Path, *args: str):
    return CliRunner().invoke(
        quota_burn,
        ["--config", str(tmp_path / "config.json"), "--tasks", str(tmp_path / "tasks.json"), *args],
    )


def _use_fake_agent(tmp_path: Path) -> None:
    command = fake_agent_command(tmp_path / "fake_agent.py")
    (tmp_path / "config.json").write_text(
        json.dumps({"execution": {"command": command, "timeoutSeconds": 10}}),
        "utf-8",
    )


def test_default_invocation_runs_one_cycle(
    tmp_path: Path,
    usage: FakeUsageSource,
    tasks_file: Path,
    fake_agent: Path,
) -> None:
    _use_fake_agent(tmp_path)

    result = _invoke(tmp_path)

    assert result.exit_code == 0, result.output
    assert 'Task "Docs" succeeded' in result.output
    assert read_tasks(tasks_file)["t1"]["status"] == "done"
    assert json.loads(fake_agent.read_text("utf-8"))["prompt"] == "Write docs"
    history = json.loads((tmp_path / "history.json").read_text("utf-8"))
    assert history[0]["taskId"] == "t1"
    assert usage.closed


def test_dry_run_command_changes_nothing(
    tmp_path: Path,
    usage: FakeUsageSource,
    tasks_file: Path,
) -> None:
    before = tasks_file.read_bytes()

    result = _invoke(tmp_path, "dry-run")

    assert result.exit_code == 0, result.output
    assert '[DRY RUN] Would run task "Docs"' in result.output
    assert tasks_file.read_bytes() == before
    assert not (tmp_path / "history.json").exists()
    assert not (tmp_path / "context").exists()
    assert not (tmp_path / "reports").exists()


def test_run_skips_when_quota_is_well_used(
    tmp_path: Path,
    usage: FakeUsageSource,
    tasks_file: Path,
) -> None:
    usage.snapshot = window_snapshot(0.9)

    result = _invoke(tmp_path, "run")

    assert result.exit_code == 0, result.output
    assert "Skipped: no spare capacity." in result.output
    assert read_tasks(tasks_file)["t1"]["status"] == "on"


def test_enable_and_reset(tmp_path: Path, tasks_file: Path) -> None:
    enabled = _invoke(tmp_path, "enable", "t2")
    reset = _invoke(tmp_path, "reset", "t3")

    assert enabled.exit_code == 0, enabled.output
    assert "Task t2 (Lint) -> on" in enabled.output
    assert reset.exit_code == 0, reset.output
    tasks = read_tasks(tasks_file)
    assert tasks["t2"]["status"] == "on"
    assert tasks["t3"]["status"] == "on"


def test_enable_rejects_wrong_state(tmp_path: Path, tasks_file: Path) -> None:
    result = _invoke(tmp_path, "enable", "t1")

    assert result.exit_code == 1
    assert read_tasks(tasks_file)["t1"]["status"] == "on"


def test_tasks_lists_queue(tmp_path: Path, tasks_file: Path) -> None:
    result = _invoke(tmp_path, "tasks")

    assert result.exit_code == 0, result.output
    assert "Docs" in result.output
    assert "Lint" in result.output


def test_status_renders_all_sections(
    tmp_path: Path,
    usage: FakeUsageSource,
    tasks_file: Path,
) -> None:
    result = _invoke(tmp_path, "status")

    assert result.exit_code == 0, result.output
    for section in ("Usage", "Threshold Evaluation", "Task Queue", "Recent History"):
        assert section in result.output
    assert "Should run: YES" in result.output
    assert "No execution history" in result.output
    assert usage.closed


def test_invalid_config_is_usage_error(tmp_path: Path, tasks_file: Path) -> None:
    (tmp_path / "config.json").write_text(
        json.dumps({"thresholds": {"maxUtilization": 3}}),
        "utf-8",
    )

    result = _invoke(tmp_path, "run")

    assert result.exit_code == 2
    assert "Invalid configuration" in result.output
    assert read_tasks(tasks_file)["t1"]["status"] == "on"


def test_watch_stops_after_max_cycles(
    tmp_path: Path,
    usage: FakeUsageSource,
    tasks_file: Path,
) -> None:
    result = _invoke(tmp_path, "watch", "--dry-run", "--max-cycles", "1")

    assert result.exit_code == 0, result.output
    assert "cycles=1" in result.output
    assert usage.calls == 1
    assert usage.closed
