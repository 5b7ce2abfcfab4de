"""Per-task continuation summaries carried from one run to the next."""

from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 4000
SUCCESS_TAG = "[previous run: success]"
FAILURE_TAG = "[previous run: FAILED]"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def context_file_name(task_id: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", task_id) + ".md"


def truncate_tail(text: str, max_chars: int) -> str:
    """Keep the last `max_chars` characters; transcripts end with their conclusion."""

    if len(text) <= max_chars:
        return text
    return text[-max_chars:]


def success_context(result_text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    body = truncate_tail(result_text.strip(), max(0, max_chars - len(SUCCESS_TAG) - 1))
    return f"{SUCCESS_TAG}\n{body}"


def failure_context(error: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    body = truncate_tail(error.strip(), max(0, max_chars - len(FAILURE_TAG) - 1))
    return f"{FAILURE_TAG}\n{body}"


def compose_prompt(context: str, prompt: str) -> str:
    """Prepend the previous run's summary; an empty context leaves the prompt verbatim."""

    if not context:
        return prompt
    return (
        "Context from the previous run of this task:\n"
        f"{context}\n"
        "\n"
        "Continue from there.\n"
        "\n"
        f"{prompt}"
    )


class RunContextStore:
    """One text artifact per task id, last write wins."""

    def __init__(self, root_dir: Path, max_chars: int = DEFAULT_MAX_CHARS) -> None:
        self.root_dir = root_dir
        self.max_chars = max_chars

    def path_for(self, task_id: str) -> Path:
        return self.root_dir / context_file_name(task_id)

    def load(self, task_id: str) -> str:
        try:
            return self.path_for(task_id).read_text("utf-8")
        except FileNotFoundError:
            return ""
        except OSError as error:
            logger.warning("Failed to read run context for %s: %s", task_id, error)
            return ""

    def save(self, task_id: str, content: str) -> None:
        path = self.path_for(task_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(truncate_tail(content, self.max_chars), "utf-8")
        except OSError as error:
            logger.warning("Failed to write run context for %s: %s", task_id, error)
            return
        logger.debug("Run context saved: %s", path)
