"""Per-run result reports."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from quota_burn.context import context_file_name

logger = logging.getLogger(__name__)


class ReportWriter:
    """Write one JSON report per run; failures go to a distinct `.failed.json` file."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def report_path(self, task_id: str, *, success: bool, now: datetime | None = None) -> Path:
        stamp = (now or datetime.now(tz=UTC)).strftime("%Y%m%dT%H%M%S%fZ")
        stem = context_file_name(task_id).removesuffix(".md")
        suffix = ".json" if success else ".failed.json"
        return self.root_dir / f"{stem}-{stamp}{suffix}"

    def write(self, task_id: str, payload: dict[str, Any], *, success: bool) -> Path | None:
        path = self.report_path(task_id, success=success)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                json.dumps(payload, ensure_ascii=False, indent=2, default=str) + "\n",
                "utf-8",
            )
        except OSError as error:
            logger.warning("Failed to write report for %s: %s", task_id, error)
            return None
        logger.debug("Report written: %s", path)
        return path
