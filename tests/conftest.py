"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from support import FAKE_AGENT_SCRIPT, fake_agent_command

from quota_burn.config import ExecutionSettings


@pytest.fixture()
def fake_agent(tmp_path: Path, monkeypatch) -> Path:
    """Install a scripted agent CLI; returns the file it logs its invocation to."""

    script = tmp_path / "fake_agent.py"
    script.write_text(FAKE_AGENT_SCRIPT.strip() + "\n", "utf-8")
    log_path = tmp_path / "agent_call.json"
    monkeypatch.setenv("FAKE_AGENT_LOG", str(log_path))
    monkeypatch.setenv("FAKE_AGENT_MODE", "ok")
    return log_path


@pytest.fixture()
def agent_execution(tmp_path: Path, fake_agent: Path) -> ExecutionSettings:
    return ExecutionSettings(
        command=fake_agent_command(tmp_path / "fake_agent.py"),
        timeout_seconds=10,
    )
