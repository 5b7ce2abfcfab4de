"""Controllers for quota-burn CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from quota_burn.config import Settings, StoragePaths, load_settings
from quota_burn.context import RunContextStore
from quota_burn.cycle import CycleController, CycleOutcome, CycleStatus
from quota_burn.dashboard import render_status_lines, render_table
from quota_burn.executor import TaskExecutor
from quota_burn.history import HistoryStore
from quota_burn.reports import ReportWriter
from quota_burn.scheduler import WatchScheduler
from quota_burn.tasks import (
    Task,
    TaskQueue,
    enable_task,
    load_queue,
    reset_task,
    save_queue,
    task_summary_rows,
)
from quota_burn.telemetry import build_usage_source
from quota_burn.threshold import evaluate


@dataclass(slots=True)
class RunCommand:
    """CLI input for a single cycle."""

    config_path: Path
    tasks_path: Path
    dry_run: bool = False


@dataclass(slots=True)
class WatchCommand:
    """CLI input for watch mode."""

    config_path: Path
    tasks_path: Path
    dry_run: bool = False
    max_cycles: int | None = None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for the status dashboard."""

    config_path: Path
    tasks_path: Path
    history_count: int = 10


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for queue listing."""

    tasks_path: Path


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for enable/reset operations."""

    tasks_path: Path
    task_id: str


class BurnCliController:
    """Wires settings, telemetry, queue and executor together for each CLI command."""

    def run_once(self, command: RunCommand) -> list[str]:
        settings = _load_valid_settings(command.config_path)
        with closing(_cycle_controller(settings, command.tasks_path)) as controller:
            return render_cycle_outcome(controller.run_cycle(dry_run=command.dry_run))

    def watch(self, command: WatchCommand) -> list[str]:
        settings = _load_valid_settings(command.config_path)
        with closing(_cycle_controller(settings, command.tasks_path)) as controller:
            scheduler = WatchScheduler(
                lambda: controller.run_cycle(dry_run=command.dry_run),
                settings.watch,
            )
            summary = scheduler.run(max_cycles=command.max_cycles)
        return [
            "Watch summary: "
            f"cycles={summary.cycles} quiet_skips={summary.quiet_skips} "
            f"errors={summary.errors} stop={summary.stop_signal or 'none'}",
        ]

    def status(self, command: StatusCommand) -> list[str]:
        settings = _load_valid_settings(command.config_path)
        paths = StoragePaths.for_tasks_file(command.tasks_path)
        with closing(build_usage_source(settings)) as source:
            snapshot = source.fetch()
        now = datetime.now().astimezone()
        return render_status_lines(
            settings=settings,
            snapshot=snapshot,
            decision=evaluate(snapshot, settings.thresholds, now=now),
            queue=load_queue(paths.tasks_path),
            recent=HistoryStore(paths.history_path).recent(command.history_count),
            now=now,
        )

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        rows = task_summary_rows(load_queue(command.tasks_path))
        return render_table(rows) or ["No tasks defined"]

    def enable(self, command: TaskMutateCommand) -> list[str]:
        return _mutate(command, enable_task)

    def reset(self, command: TaskMutateCommand) -> list[str]:
        return _mutate(command, reset_task)


def render_cycle_outcome(outcome: CycleOutcome) -> list[str]:
    lines = [f"Decision: {outcome.decision.reason}"]
    task = outcome.task
    if outcome.status is CycleStatus.SKIPPED:
        lines.append("Skipped: no spare capacity.")
    elif outcome.status is CycleStatus.IDLE:
        lines.append("No eligible tasks in queue.")
    elif outcome.status is CycleStatus.DRY_RUN and task is not None:
        lines.append(f'[DRY RUN] Would run task "{task.name}" ({task.id}); nothing executed.')
    elif task is not None and outcome.result is not None:
        result = outcome.result
        cost = f"${result.cost_usd:.2f}" if result.cost_usd is not None else "-"
        final = outcome.final_task_status.value if outcome.final_task_status else "-"
        lines.append(
            f'Task "{task.name}" {outcome.status.value}: '
            f"status={final} cost={cost} duration={result.duration_ms / 1000:.1f}s",
        )
        if result.error:
            lines.append(f"Error: {result.error[:200]}")
    return lines


def _load_valid_settings(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    settings.validate()
    return settings


def _cycle_controller(settings: Settings, tasks_path: Path) -> CycleController:
    paths = StoragePaths.for_tasks_file(tasks_path)
    executor = TaskExecutor(
        execution=settings.execution,
        context_store=RunContextStore(paths.context_dir, settings.execution.context_max_chars),
        reports=ReportWriter(paths.reports_dir),
    )
    return CycleController(
        usage_source=build_usage_source(settings),
        thresholds=settings.thresholds,
        tasks_path=paths.tasks_path,
        executor=executor,
        history=HistoryStore(paths.history_path),
    )


def _mutate(
    command: TaskMutateCommand,
    operation: Callable[[TaskQueue, str], Task],
) -> list[str]:
    queue = load_queue(command.tasks_path)
    task = operation(queue, command.task_id)
    save_queue(command.tasks_path, queue)
    return [f"Task {task.id} ({task.name}) -> {task.status.value}"]
