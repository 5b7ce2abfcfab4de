from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from quota_burn.config import ExecutionSettings
from quota_burn.context import FAILURE_TAG, SUCCESS_TAG, RunContextStore
from quota_burn.executor import (
    ResolvedOptions,
    TaskExecutor,
    build_command,
    extract_cost,
    parse_output,
    resolve_options,
)
from quota_burn.reports import ReportWriter
from quota_burn.tasks import Task

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Agent CLI Invocation"),
]


def _executor(tmp_path: Path, execution: ExecutionSettings) -> TaskExecutor:
    return TaskExecutor(
        execution=execution,
        context_store=RunContextStore(tmp_path / "context"),
        reports=ReportWriter(tmp_path / "reports"),
    )


def _task(tmp_path: Path, **fields) -> Task:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return Task(id="t1", name="Tidy", prompt="Tidy the repo", project_dir=str(project), **fields)


def _reports(tmp_path: Path, pattern: str) -> list[Path]:
    return sorted((tmp_path / "reports").glob(pattern))


def test_build_command_layers_task_over_defaults() -> None:
    task = Task(id="t", name="t", prompt="p", model="opus", max_budget_usd=2.5)
    options = resolve_options(
        task,
        ExecutionSettings(model="sonnet", default_allowed_tools="Read", yolo=True),
    )

    argv = build_command("claude --verbose", "hello", options)

    assert argv == [
        "claude",
        "--verbose",
        "-p",
        "hello",
        "--output-format",
        "json",
        "--model",
        "opus",
        "--allowedTools",
        "Read",
        "--max-budget-usd",
        "2.5",
        "--dangerously-skip-permissions",
    ]


def test_task_yolo_false_overrides_default() -> None:
    task = Task(id="t", name="t", prompt="p", yolo=False)

    assert not resolve_options(task, ExecutionSettings(yolo=True)).yolo
    assert "--dangerously-skip-permissions" not in build_command(
        "claude",
        "p",
        ResolvedOptions(model=None, allowed_tools=None, yolo=False),
    )


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"total_cost_usd": 1.5, "cost_usd": 9}, 1.5),
        ({"cost_usd": 0.3}, 0.3),
        ({"costUSD": 0.2}, 0.2),
        ({"usage": {"cost": 0.1}}, 0.1),
        ({"usage": {"input_tokens": 3}}, None),
    ],
)
def test_extract_cost_probes_known_fields(payload: dict, expected: float | None) -> None:
    assert extract_cost(payload) == expected


def test_parse_output_wraps_non_json() -> None:
    assert parse_output("hello") == {"rawOutput": "hello"}
    assert parse_output("x" * 6000) == {"rawOutput": "x" * 5000}


def test_successful_run_records_cost_report_and_context(
    tmp_path: Path,
    agent_execution: ExecutionSettings,
    fake_agent: Path,
) -> None:
    executor = _executor(tmp_path, agent_execution)
    task = _task(tmp_path)

    result = executor.run(task)

    assert result.success
    assert result.cost_usd == 0.42
    assert result.error is None
    call = json.loads(fake_agent.read_text("utf-8"))
    assert call["prompt"] == "Tidy the repo"
    assert Path(call["cwd"]) == Path(task.project_dir).resolve()
    assert len(_reports(tmp_path, "t1-*.json")) == 1
    assert executor.context_store.load("t1") == f"{SUCCESS_TAG}\ndid the thing"


def test_previous_context_is_prepended(
    tmp_path: Path,
    agent_execution: ExecutionSettings,
    fake_agent: Path,
) -> None:
    executor = _executor(tmp_path, agent_execution)
    executor.context_store.save("t1", f"{SUCCESS_TAG}\nstep one finished")

    executor.run(_task(tmp_path))

    prompt = json.loads(fake_agent.read_text("utf-8"))["prompt"]
    assert "step one finished" in prompt
    assert prompt.endswith("Tidy the repo")


def test_non_zero_exit_is_failure_with_stderr(
    tmp_path: Path,
    agent_execution: ExecutionSettings,
    monkeypatch,
) -> None:
    monkeypatch.setenv("FAKE_AGENT_MODE", "crash")
    executor = _executor(tmp_path, agent_execution)

    result = executor.run(_task(tmp_path))

    assert not result.success
    assert result.exit_code == 3
    assert result.error == "agent exploded"
    assert result.cost_usd is None
    assert len(_reports(tmp_path, "*.failed.json")) == 1
    assert executor.context_store.load("t1") == f"{FAILURE_TAG}\nagent exploded"


def test_non_json_output_still_succeeds(
    tmp_path: Path,
    agent_execution: ExecutionSettings,
    monkeypatch,
) -> None:
    monkeypatch.setenv("FAKE_AGENT_MODE", "text")

    result = _executor(tmp_path, agent_execution).run(_task(tmp_path))

    assert result.success
    assert result.cost_usd is None
    assert result.result == {"rawOutput": "plain text, not json\n"}


def test_reported_error_result_is_failure(
    tmp_path: Path,
    agent_execution: ExecutionSettings,
    monkeypatch,
) -> None:
    monkeypatch.setenv("FAKE_AGENT_MODE", "is_error")

    result = _executor(tmp_path, agent_execution).run(_task(tmp_path))

    assert not result.success
    assert result.error == "model refused"
    assert result.cost_usd == 0.01


def test_timeout_is_failure(
    tmp_path: Path,
    agent_execution: ExecutionSettings,
    monkeypatch,
) -> None:
    monkeypatch.setenv("FAKE_AGENT_MODE", "sleep")
    execution = replace(agent_execution, timeout_seconds=0.5)

    result = _executor(tmp_path, execution).run(_task(tmp_path))

    assert not result.success
    assert result.timed_out
    assert "Timed out" in (result.error or "")


def test_missing_agent_binary_is_failure(tmp_path: Path) -> None:
    execution = ExecutionSettings(command=str(tmp_path / "no-such-agent"))

    result = _executor(tmp_path, execution).run(_task(tmp_path))

    assert not result.success
    assert "not found" in (result.error or "")


def test_missing_project_directory_is_failure(
    tmp_path: Path,
    agent_execution: ExecutionSettings,
) -> None:
    task = Task(id="t1", name="Tidy", prompt="p", project_dir=str(tmp_path / "nowhere"))

    result = _executor(tmp_path, agent_execution).run(task)

    assert not result.success
    assert "Project directory not found" in (result.error or "")


def test_allowed_tools_are_installed_only_during_the_run(
    tmp_path: Path,
    agent_execution: ExecutionSettings,
) -> None:
    task = _task(tmp_path, allowed_tools="Read,Edit")

    result = _executor(tmp_path, agent_execution).run(task)

    assert result.success
    assert not (Path(task.project_dir) / ".claude").exists()


def test_tool_list_is_joined_only_for_the_command() -> None:
    task = Task.from_dict({"id": "t", "prompt": "p", "allowedTools": ["Read", "Bash(git diff:*)"]})

    options = resolve_options(task, ExecutionSettings(default_allowed_tools="Edit"))

    assert task.allowed_tools == ["Read", "Bash(git diff:*)"]
    assert options.allowed_tools == "Read,Bash(git diff:*)"
    assert build_command("claude", "p", options)[-2:] == ["--allowedTools", "Read,Bash(git diff:*)"]


def test_unexpected_error_becomes_failed_result(
    tmp_path: Path,
    agent_execution: ExecutionSettings,
    fake_agent: Path,
    monkeypatch,
) -> None:
    def explode(*args, **kwargs):
        raise RuntimeError("argv exploded")

    monkeypatch.setattr("quota_burn.executor.build_command", explode)
    executor = _executor(tmp_path, agent_execution)

    result = executor.run(_task(tmp_path))

    assert not result.success
    assert result.error == "Unexpected error: argv exploded"
    assert not fake_agent.exists()
    assert len(_reports(tmp_path, "*.failed.json")) == 1
    assert executor.context_store.load("t1") == f"{FAILURE_TAG}\nUnexpected error: argv exploded"
