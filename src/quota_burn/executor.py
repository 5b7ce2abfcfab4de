"""Run one task through the agent CLI and record its report and run context."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from quota_burn.config import ExecutionSettings
from quota_burn.context import RunContextStore, compose_prompt, failure_context, success_context
from quota_burn.permissions import project_permissions
from quota_burn.reports import ReportWriter
from quota_burn.tasks import Task

logger = logging.getLogger(__name__)

RAW_OUTPUT_MAX_CHARS = 5000
ERROR_MAX_CHARS = 1000

# Cost reporting differs across CLI releases; earlier entries win.
COST_FIELD_PATHS: tuple[tuple[str, ...], ...] = (
    ("total_cost_usd",),
    ("cost_usd",),
    ("costUSD",),
    ("usage", "cost"),
)


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one agent invocation."""

    success: bool
    cost_usd: float | None
    duration_ms: int
    error: str | None
    raw_output: str
    result: dict[str, Any] | None = None
    exit_code: int | None = None
    timed_out: bool = False


@dataclass(slots=True)
class ResolvedOptions:
    """Task overrides layered over execution defaults."""

    model: str | None
    allowed_tools: str | None
    yolo: bool
    max_budget_usd: float | None = None
    project_dir: Path | None = None


def resolve_options(task: Task, execution: ExecutionSettings) -> ResolvedOptions:
    tools = task.allowed_tools
    if isinstance(tools, list):
        tools = ",".join(tools)
    return ResolvedOptions(
        model=task.model or execution.model,
        allowed_tools=tools or execution.default_allowed_tools,
        yolo=task.yolo if task.yolo is not None else bool(execution.yolo),
        max_budget_usd=task.max_budget_usd,
        project_dir=Path(task.project_dir).expanduser() if task.project_dir else None,
    )


def build_command(command: str, prompt: str, options: ResolvedOptions) -> list[str]:
    argv = [*shlex.split(command), "-p", prompt, "--output-format", "json"]
    if options.model:
        argv += ["--model", options.model]
    if options.allowed_tools:
        argv += ["--allowedTools", options.allowed_tools]
    if options.max_budget_usd:
        argv += ["--max-budget-usd", f"{options.max_budget_usd:g}"]
    if options.yolo:
        argv.append("--dangerously-skip-permissions")
    return argv


def parse_output(stdout: str) -> dict[str, Any]:
    """Structured result, or the raw text wrapped as an opaque result."""

    try:
        parsed = json.loads(stdout)
    except ValueError:
        return {"rawOutput": stdout[:RAW_OUTPUT_MAX_CHARS]}
    if not isinstance(parsed, dict):
        return {"rawOutput": stdout[:RAW_OUTPUT_MAX_CHARS]}
    return parsed


def extract_cost(result: dict[str, Any]) -> float | None:
    for path in COST_FIELD_PATHS:
        value: Any = result
        for key in path:
            value = value.get(key) if isinstance(value, dict) else None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


def result_text(result: dict[str, Any], stdout: str) -> str:
    text = result.get("result")
    if isinstance(text, str) and text.strip():
        return text
    raw = result.get("rawOutput")
    if isinstance(raw, str):
        return raw
    return stdout


class TaskExecutor:
    """Invokes the agent CLI synchronously, one task at a time."""

    def __init__(
        self,
        *,
        execution: ExecutionSettings,
        context_store: RunContextStore,
        reports: ReportWriter,
    ) -> None:
        self.execution = execution
        self.context_store = context_store
        self.reports = reports

    def run(self, task: Task) -> ExecutionResult:
        """Run the task and record it; every failure comes back as a failed result."""

        started = time.monotonic()
        try:
            outcome = self._execute(task, started)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while executing task %s", task.id)
            outcome = _failure(f"Unexpected error: {error}", started=started)

        self._record(task, outcome)
        if outcome.success:
            logger.info("Task completed in %.1fs", outcome.duration_ms / 1000)
        else:
            logger.error(
                "Task failed after %.1fs: %s",
                outcome.duration_ms / 1000,
                (outcome.error or "")[:200],
            )
        return outcome

    def _execute(self, task: Task, started: float) -> ExecutionResult:
        options = resolve_options(task, self.execution)
        prompt = compose_prompt(self.context_store.load(task.id), task.prompt)
        argv = build_command(self.execution.command, prompt, options)

        logger.info("Executing: %s", " ".join(shlex.quote(part) for part in argv[:4]) + " ...")
        logger.debug("Full args: %s", shlex.join(argv))

        try:
            with project_permissions(options.project_dir, options.allowed_tools):
                return self._invoke(argv, cwd=options.project_dir, started=started)
        except OSError as error:
            return _failure(f"Could not prepare project directory: {error}", started=started)

    def _invoke(self, argv: list[str], *, cwd: Path | None, started: float) -> ExecutionResult:
        if cwd is not None and not cwd.is_dir():
            return _failure(f"Project directory not found: {cwd}", started=started)
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.execution.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            return _failure(
                f"Timed out after {self.execution.timeout_seconds:g}s",
                started=started,
                stdout=_as_text(error.stdout),
                timed_out=True,
            )
        except FileNotFoundError:
            return _failure(f"Agent command not found: {argv[0]}", started=started)
        except OSError as error:
            return _failure(f"Agent command failed to start: {error}", started=started)

        stdout = completed.stdout or ""
        stderr = completed.stderr or ""
        if completed.returncode != 0:
            message = stderr.strip() or stdout.strip() or f"exit code {completed.returncode}"
            return _failure(
                message,
                started=started,
                stdout=stdout,
                exit_code=completed.returncode,
            )

        result = parse_output(stdout)
        if result.get("is_error") is True:
            message = result_text(result, stdout) or "Agent reported an error"
            return ExecutionResult(
                success=False,
                cost_usd=extract_cost(result),
                duration_ms=_elapsed_ms(started),
                error=message[:ERROR_MAX_CHARS],
                raw_output=stdout,
                result=result,
                exit_code=0,
            )
        return ExecutionResult(
            success=True,
            cost_usd=extract_cost(result),
            duration_ms=_elapsed_ms(started),
            error=None,
            raw_output=stdout,
            result=result,
            exit_code=0,
        )

    def _record(self, task: Task, outcome: ExecutionResult) -> None:
        report = {
            "taskId": task.id,
            "taskName": task.name,
            "success": outcome.success,
            "costUSD": outcome.cost_usd,
            "durationMs": outcome.duration_ms,
            "exitCode": outcome.exit_code,
            "timedOut": outcome.timed_out,
            "error": outcome.error,
            "result": outcome.result,
        }
        self.reports.write(task.id, report, success=outcome.success)

        max_chars = self.context_store.max_chars
        if outcome.success:
            text = result_text(outcome.result or {}, outcome.raw_output)
            content = success_context(text, max_chars)
        else:
            content = failure_context(outcome.error or "unknown error", max_chars)
        self.context_store.save(task.id, content)


def _failure(
    message: str,
    *,
    started: float,
    stdout: str = "",
    exit_code: int | None = None,
    timed_out: bool = False,
) -> ExecutionResult:
    return ExecutionResult(
        success=False,
        cost_usd=None,
        duration_ms=_elapsed_ms(started),
        error=message[:ERROR_MAX_CHARS],
        raw_output=stdout,
        result={"rawOutput": stdout[:RAW_OUTPUT_MAX_CHARS]} if stdout else None,
        exit_code=exit_code,
        timed_out=timed_out,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
