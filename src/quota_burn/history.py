"""Append-only execution history."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class HistoryRecord:
    """One executed task."""

    timestamp: str
    task_id: str
    task_name: str
    success: bool
    cost_usd: float | None
    duration_ms: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "taskId": self.task_id,
            "taskName": self.task_name,
            "success": self.success,
            "costUSD": self.cost_usd,
            "durationMs": self.duration_ms,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> HistoryRecord:
        return cls(
            timestamp=str(raw.get("timestamp", "")),
            task_id=str(raw.get("taskId", "")),
            task_name=str(raw.get("taskName") or raw.get("taskId", "")),
            success=bool(raw.get("success")),
            cost_usd=raw.get("costUSD"),
            duration_ms=int(raw.get("durationMs") or 0),
            error=raw.get("error"),
        )


def utc_timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class HistoryStore:
    """JSON array of history records; appends rewrite the whole file, never edit old entries."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load_raw(self) -> list[Any]:
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as error:
            logger.warning("Failed to read history %s: %s", self.path, error)
            return []
        if not isinstance(payload, list):
            logger.warning("History %s is not a JSON array, starting over", self.path)
            return []
        return payload

    def load(self) -> list[HistoryRecord]:
        return [HistoryRecord.from_dict(item) for item in self.load_raw() if isinstance(item, dict)]

    def append(self, record: HistoryRecord) -> None:
        entries = self.load_raw()
        entries.append(record.to_dict())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(entries, ensure_ascii=False, indent=2) + "\n", "utf-8")
        except OSError as error:
            logger.warning("Failed to write history %s: %s", self.path, error)
            return
        logger.debug("History updated: %s", self.path)

    def recent(self, count: int = 10) -> list[HistoryRecord]:
        """Newest first."""

        return list(reversed(self.load()[-count:])) if count > 0 else []


def history_rows(records: list[HistoryRecord]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for record in records:
        try:
            when = datetime.fromisoformat(record.timestamp.replace("Z", "+00:00"))
            time_text = when.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        except ValueError:
            time_text = record.timestamp
        rows.append(
            {
                "time": time_text,
                "task": record.task_name or record.task_id,
                "status": "OK" if record.success else "FAIL",
                "cost": f"${record.cost_usd:.2f}" if record.cost_usd is not None else "-",
                "duration": f"{record.duration_ms / 1000:.0f}s" if record.duration_ms else "-",
            },
        )
    return rows
