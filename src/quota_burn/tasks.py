"""Task queue persistence, selection and status lifecycle."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 999

_KNOWN_KEYS = (
    "id",
    "name",
    "prompt",
    "projectDir",
    "status",
    "priority",
    "model",
    "allowedTools",
    "maxBudgetUSD",
    "repeat",
    "yolo",
)


class TaskStatus(str, Enum):
    """Queue lifecycle states."""

    OFF = "off"
    ON = "on"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


RESETTABLE_STATUSES = (TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.RUNNING)


class TaskStateError(ValueError):
    """Requested manual transition is not allowed from the task's current status."""


@dataclass(slots=True)
class Task:
    """One queue entry; unknown JSON keys ride along in `extra`.

    `source` is the entry as it was read. Saving writes keys back in their
    original order and leaves out defaults the file never spelled out, so an
    untouched entry round-trips unchanged.
    """

    id: str
    name: str
    prompt: str
    status: TaskStatus = TaskStatus.OFF
    project_dir: str | None = None
    priority: int | None = None
    model: str | None = None
    allowed_tools: str | list[str] | None = None
    max_budget_usd: float | None = None
    repeat: bool = False
    yolo: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    source: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def effective_priority(self) -> int:
        return DEFAULT_PRIORITY if self.priority is None else self.priority

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        task_id = raw.get("id")
        if not isinstance(task_id, str) or not task_id.strip():
            raise ValueError("task.id must be a non-empty string")
        prompt = raw.get("prompt", "")
        if not isinstance(prompt, str):
            raise TypeError(f"task {task_id}: prompt must be a string")
        priority = raw.get("priority")
        if priority is not None and (isinstance(priority, bool) or not isinstance(priority, int)):
            raise TypeError(f"task {task_id}: priority must be an integer")
        budget = raw.get("maxBudgetUSD")
        if budget is not None and (
            isinstance(budget, bool) or not isinstance(budget, (int, float))
        ):
            raise TypeError(f"task {task_id}: maxBudgetUSD must be a number")
        for key in ("name", "projectDir", "model"):
            if raw.get(key) is not None and not isinstance(raw[key], str):
                raise TypeError(f"task {task_id}: {key} must be a string")
        for key in ("repeat", "yolo"):
            if raw.get(key) is not None and not isinstance(raw[key], bool):
                raise TypeError(f"task {task_id}: {key} must be true or false")
        allowed_tools = raw.get("allowedTools")
        if allowed_tools is not None and not _is_tool_list(allowed_tools):
            raise TypeError(f"task {task_id}: allowedTools must be a string or a list of strings")

        return cls(
            id=task_id,
            name=raw.get("name") or task_id,
            prompt=prompt,
            status=TaskStatus(raw.get("status", TaskStatus.OFF.value)),
            project_dir=raw.get("projectDir"),
            priority=priority,
            model=raw.get("model"),
            allowed_tools=allowed_tools,
            max_budget_usd=budget,
            repeat=raw.get("repeat") or False,
            yolo=raw.get("yolo"),
            extra={key: value for key, value in raw.items() if key not in _KNOWN_KEYS},
            source=dict(raw),
        )

    def to_dict(self) -> dict[str, Any]:
        known: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "prompt": self.prompt,
            "status": self.status.value,
            "projectDir": self.project_dir,
            "priority": self.priority,
            "model": self.model,
            "allowedTools": self.allowed_tools,
            "maxBudgetUSD": self.max_budget_usd,
            "repeat": self.repeat,
            "yolo": self.yolo,
        }
        implied = {"name": self.id, "prompt": "", "status": TaskStatus.OFF.value, "repeat": False}

        payload: dict[str, Any] = {}
        for key, original in self.source.items():
            if key not in _KNOWN_KEYS:
                if key in self.extra:
                    payload[key] = self.extra[key]
                continue
            value = known[key]
            # An empty or null value the file spelled out stays as written while still implied.
            if not original and value == implied.get(key):
                value = original
            payload[key] = value
        for key, value in known.items():
            if key in payload or value is None:
                continue
            if key == "id" or value != implied.get(key):
                payload[key] = value
        for key, value in self.extra.items():
            payload.setdefault(key, value)
        return payload


@dataclass(slots=True)
class TaskQueue:
    """In-memory queue document; list order is the file order.

    `skipped` holds entries that failed validation, keyed by their original
    index, so a rewrite of the file does not drop them.
    """

    tasks: list[Task] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    skipped: list[tuple[int, Any]] = field(default_factory=list)

    def get(self, task_id: str) -> Task | None:
        return next((task for task in self.tasks if task.id == task_id), None)

    def to_dict(self) -> dict[str, Any]:
        entries: list[Any] = [task.to_dict() for task in self.tasks]
        for index, entry in self.skipped:
            entries.insert(min(index, len(entries)), entry)
        return {**self.extra, "tasks": entries}


def load_queue(path: Path) -> TaskQueue:
    """Load the queue; a missing or unreadable file yields an empty queue."""

    try:
        raw = json.loads(path.read_text("utf-8"))
    except FileNotFoundError:
        logger.warning("Tasks file not found: %s", path)
        return TaskQueue()
    except (OSError, ValueError) as error:
        logger.error("Failed to load tasks from %s: %s", path, error)
        return TaskQueue()

    try:
        return _parse_queue(raw)
    except (TypeError, ValueError) as error:
        logger.error("Invalid tasks file %s: %s", path, error)
        return TaskQueue()


def save_queue(path: Path, queue: TaskQueue) -> None:
    """Rewrite the whole queue document, replacing the file in one step."""

    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(queue.to_dict(), ensure_ascii=False, indent=2) + "\n"
    handle, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(handle, "w", encoding="utf-8") as tmp_file:
            tmp_file.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def select_task(queue: TaskQueue, available_budget: float | None = None) -> Task | None:
    """Most urgent enabled task that fits the budget ceiling, if one is given."""

    candidates: list[Task] = []
    for task in queue.tasks:
        if task.status is not TaskStatus.ON:
            continue
        if (
            available_budget is not None
            and task.max_budget_usd is not None
            and task.max_budget_usd > available_budget
        ):
            logger.debug(
                'Skipping "%s": budget $%.2f > available $%.2f',
                task.name,
                task.max_budget_usd,
                available_budget,
            )
            continue
        candidates.append(task)

    candidates.sort(key=lambda task: task.effective_priority)
    return candidates[0] if candidates else None


def transition_task(queue: TaskQueue, task_id: str, status: TaskStatus) -> bool:
    """Overwrite a task's status in place; False when the id is gone."""

    task = queue.get(task_id)
    if task is None:
        logger.warning("Task %s no longer in queue, status %s not recorded", task_id, status.value)
        return False
    task.status = status
    return True


def status_after_run(task: Task, *, success: bool) -> TaskStatus:
    if not success:
        return TaskStatus.FAILED
    return TaskStatus.ON if task.repeat else TaskStatus.DONE


def enable_task(queue: TaskQueue, task_id: str) -> Task:
    """Manual `off -> on`."""

    task = _require(queue, task_id)
    if task.status is not TaskStatus.OFF:
        raise TaskStateError(
            f"Task {task_id} is {task.status.value}; only off tasks can be enabled.",
        )
    task.status = TaskStatus.ON
    return task


def reset_task(queue: TaskQueue, task_id: str) -> Task:
    """Manual `done|failed|running -> on`."""

    task = _require(queue, task_id)
    if task.status not in RESETTABLE_STATUSES:
        allowed = ", ".join(status.value for status in RESETTABLE_STATUSES)
        raise TaskStateError(
            f"Task {task_id} is {task.status.value}; only {allowed} tasks can be reset.",
        )
    task.status = TaskStatus.ON
    return task


def task_summary_rows(queue: TaskQueue) -> list[dict[str, str]]:
    return [
        {
            "id": task.id,
            "name": task.name,
            "status": task.status.value,
            "priority": str(task.priority) if task.priority is not None else "-",
            "budget": f"${task.max_budget_usd:.2f}" if task.max_budget_usd else "-",
            "repeat": "yes" if task.repeat else "no",
        }
        for task in queue.tasks
    ]


def _parse_queue(raw: object) -> TaskQueue:
    if not isinstance(raw, dict):
        raise TypeError("tasks document must be a JSON object")
    raw_tasks = raw.get("tasks", [])
    if not isinstance(raw_tasks, list):
        raise TypeError("tasks.tasks must be an array")

    tasks: list[Task] = []
    skipped: list[tuple[int, Any]] = []
    for index, item in enumerate(raw_tasks):
        try:
            if not isinstance(item, dict):
                raise TypeError("task entry must be an object")
            tasks.append(Task.from_dict(item))
        except (TypeError, ValueError) as error:
            logger.error("Skipping invalid task entry #%d: %s", index, error)
            skipped.append((index, item))
    return TaskQueue(
        tasks=tasks,
        extra={key: value for key, value in raw.items() if key != "tasks"},
        skipped=skipped,
    )


def _is_tool_list(value: object) -> bool:
    if isinstance(value, str):
        return True
    return isinstance(value, list) and all(isinstance(tool, str) for tool in value)


def _require(queue: TaskQueue, task_id: str) -> Task:
    task = queue.get(task_id)
    if task is None:
        raise TaskStateError(f"Task not found: {task_id}")
    return task
