"""Temporary tool allow-list written into a task's project directory."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

SETTINGS_DIR = ".claude"
SETTINGS_FILE = "settings.local.json"


def split_tools(allowed_tools: str) -> list[str]:
    """Split a comma list, keeping commas inside `Bash(...)` patterns."""

    tools: list[str] = []
    depth = 0
    current: list[str] = []
    for char in allowed_tools:
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(0, depth - 1)
        if char == "," and depth == 0:
            tools.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    tools.append("".join(current).strip())
    return [tool for tool in tools if tool]


@contextmanager
def project_permissions(
    project_dir: Path | None,
    allowed_tools: str | None,
) -> Iterator[Path | None]:
    """Install an allow-list settings file for the run and restore the directory afterwards.

    Yields the settings path, or None when there is nothing to install. The previous
    file (if any) is put back byte-for-byte on every exit path; a file or directory
    created here is removed.
    """

    if project_dir is None or not allowed_tools or not project_dir.is_dir():
        yield None
        return

    settings_dir = project_dir / SETTINGS_DIR
    settings_path = settings_dir / SETTINGS_FILE
    created_dir = not settings_dir.exists()
    backup = settings_path.read_bytes() if settings_path.exists() else None

    settings_dir.mkdir(parents=True, exist_ok=True)
    payload = {"permissions": {"allow": split_tools(allowed_tools)}}
    try:
        settings_path.write_text(json.dumps(payload, indent=2) + "\n", "utf-8")
        logger.debug("Installed project permissions at %s", settings_path)
        yield settings_path
    finally:
        _restore(settings_path, backup, created_dir)


def _restore(settings_path: Path, backup: bytes | None, created_dir: bool) -> None:
    try:
        if backup is not None:
            settings_path.write_bytes(backup)
            return
        settings_path.unlink(missing_ok=True)
        if created_dir and not any(settings_path.parent.iterdir()):
            settings_path.parent.rmdir()
    except OSError as error:
        logger.warning("Failed to restore project permissions at %s: %s", settings_path, error)
