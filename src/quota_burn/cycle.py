"""One evaluate -> select -> execute -> record cycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from quota_burn.config import ThresholdSettings
from quota_burn.executor import ExecutionResult, TaskExecutor
from quota_burn.history import HistoryRecord, HistoryStore, utc_timestamp
from quota_burn.tasks import (
    Task,
    TaskStatus,
    load_queue,
    save_queue,
    select_task,
    status_after_run,
    transition_task,
)
from quota_burn.telemetry.snapshot import UsageSource
from quota_burn.threshold import Decision, evaluate

logger = logging.getLogger(__name__)


class CycleStatus(str, Enum):
    """How a cycle ended."""

    SKIPPED = "skipped"
    IDLE = "idle"
    DRY_RUN = "dry_run"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class CycleOutcome:
    """Result of one cycle for CLI reporting and tests."""

    status: CycleStatus
    decision: Decision
    task: Task | None = None
    result: ExecutionResult | None = None
    final_task_status: TaskStatus | None = None


class CycleController:
    """Turns a usage verdict into at most one task execution."""

    def __init__(
        self,
        *,
        usage_source: UsageSource,
        thresholds: ThresholdSettings,
        tasks_path: Path,
        executor: TaskExecutor,
        history: HistoryStore,
    ) -> None:
        self.usage_source = usage_source
        self.thresholds = thresholds
        self.tasks_path = tasks_path
        self.executor = executor
        self.history = history

    def close(self) -> None:
        self.usage_source.close()

    def run_cycle(self, *, dry_run: bool = False) -> CycleOutcome:
        logger.info("Checking usage...")
        decision = evaluate(self.usage_source.fetch(), self.thresholds)
        logger.info("Decision: %s", decision.reason)
        if not decision.should_run:
            return CycleOutcome(status=CycleStatus.SKIPPED, decision=decision)

        queue = load_queue(self.tasks_path)
        task = select_task(queue, decision.available_budget)
        if task is None:
            logger.info("No eligible tasks in queue")
            return CycleOutcome(status=CycleStatus.IDLE, decision=decision)

        budget = f"${task.max_budget_usd:.2f}" if task.max_budget_usd else "unlimited"
        logger.info(
            'Selected task: "%s" (priority %s, budget %s)',
            task.name,
            task.priority if task.priority is not None else "-",
            budget,
        )
        if dry_run:
            logger.warning(
                '[DRY RUN] Would execute task "%s" (%s). Stopping here.',
                task.name,
                task.id,
            )
            return CycleOutcome(status=CycleStatus.DRY_RUN, decision=decision, task=task)

        transition_task(queue, task.id, TaskStatus.RUNNING)
        save_queue(self.tasks_path, queue)

        result = self.executor.run(task)
        final_status = status_after_run(task, success=result.success)
        self._record_status(task.id, final_status)

        self.history.append(
            HistoryRecord(
                timestamp=utc_timestamp(),
                task_id=task.id,
                task_name=task.name,
                success=result.success,
                cost_usd=result.cost_usd,
                duration_ms=result.duration_ms,
                error=result.error,
            ),
        )

        if result.success:
            logger.info('Task "%s" completed -> %s', task.name, final_status.value)
            status = CycleStatus.SUCCEEDED
        else:
            logger.error('Task "%s" failed: %s', task.name, (result.error or "")[:200])
            status = CycleStatus.FAILED
        return CycleOutcome(
            status=status,
            decision=decision,
            task=task,
            result=result,
            final_task_status=final_status,
        )

    def _record_status(self, task_id: str, status: TaskStatus) -> None:
        # Re-read: the queue file may have been edited while the task ran.
        queue = load_queue(self.tasks_path)
        if transition_task(queue, task_id, status):
            save_queue(self.tasks_path, queue)
