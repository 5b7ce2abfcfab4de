"""Billing-block telemetry read from the `ccusage` CLI."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from quota_burn.config import WEEK_DAYS
from quota_burn.telemetry.snapshot import BillingBlock, BillingSnapshot

logger = logging.getLogger(__name__)

# Field names differ between ccusage releases; earlier entries win.
START_FIELDS = ("startTime", "start", "blockStart")
END_FIELDS = ("endTime", "end", "blockEnd")
COST_FIELDS = ("costUSD", "totalCost", "cost")

CommandRunner = Callable[[Sequence[str], float], str]


class UsageCommandError(RuntimeError):
    """Usage CLI could not be run or returned unusable output."""


def week_start(start_day: str, now: datetime) -> datetime:
    """Local midnight of the most recent `start_day` (today included)."""

    try:
        day_index = WEEK_DAYS.index(start_day.lower())
    except ValueError:
        day_index = 0
    diff = (now.weekday() - day_index) % 7
    start = now - timedelta(days=diff)
    return start.replace(hour=0, minute=0, second=0, microsecond=0)


def extract_blocks(payload: object) -> list[dict[str, Any]]:
    """Accept both `{"blocks": [...]}` and bare list/object envelopes."""

    if isinstance(payload, dict) and "blocks" in payload:
        blocks = payload["blocks"]
    elif isinstance(payload, list):
        blocks = payload
    elif isinstance(payload, dict):
        blocks = [payload]
    else:
        raise UsageCommandError(f"Unexpected usage payload type: {type(payload).__name__}")
    if not isinstance(blocks, list):
        raise UsageCommandError("Usage payload `blocks` is not an array")
    return [block for block in blocks if isinstance(block, dict)]


def block_cost(block: dict[str, Any]) -> float:
    raw = _first_present(block, COST_FIELDS)
    if isinstance(raw, bool):
        return 0.0
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        try:
            return float(raw)
        except ValueError:
            return 0.0
    return 0.0


def normalize_block(block: dict[str, Any], now: datetime) -> BillingBlock:
    start = _parse_time(_first_present(block, START_FIELDS))
    end = _parse_time(_first_present(block, END_FIELDS))

    projection = block.get("projection")
    projected = projection.get("remainingMinutes") if isinstance(projection, dict) else None
    if isinstance(projected, (int, float)) and not isinstance(projected, bool):
        remaining = float(projected)
    elif end is not None:
        if end.tzinfo is not None:
            reference = now.astimezone(end.tzinfo)
        else:
            reference = now.replace(tzinfo=None)
        remaining = max(0.0, (end - reference).total_seconds() / 60)
    else:
        remaining = 0.0

    return BillingBlock(
        start=start,
        end=end,
        remaining_minutes=round(remaining, 1),
        total_cost=block_cost(block),
    )


class BillingBlockSource:
    """Fetch the active billing block and this week's spend."""

    def __init__(
        self,
        *,
        command: str,
        weekly_start_day: str,
        timeout_seconds: float,
        runner: CommandRunner | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.command = shlex.split(command)
        self.weekly_start_day = weekly_start_day
        self.timeout_seconds = timeout_seconds
        self._runner = runner or _run_command
        self._clock = clock

    def fetch(self) -> BillingSnapshot | None:
        now = self._clock()
        try:
            blocks = extract_blocks(self._query(["blocks", "--active", "--json"]))
        except UsageCommandError as error:
            logger.error("Failed to fetch active block: %s", error)
            return None

        if not blocks:
            logger.debug("Usage command returned no active block")
            block = None
        else:
            block = normalize_block(blocks[0], now)
        return BillingSnapshot(block=block, weekly_cost=self.weekly_cost(now))

    def weekly_cost(self, now: datetime) -> float:
        since = week_start(self.weekly_start_day, now).strftime("%Y%m%d")
        try:
            blocks = extract_blocks(self._query(["blocks", "--json", "--since", since]))
        except UsageCommandError as error:
            logger.error("Failed to fetch weekly cost: %s", error)
            return 0.0
        return round(sum(block_cost(block) for block in blocks), 2)

    def close(self) -> None:
        """Nothing to release; each query is its own subprocess."""

    def _query(self, args: list[str]) -> object:
        output = self._runner([*self.command, *args], self.timeout_seconds)
        try:
            return json.loads(output)
        except ValueError as error:
            raise UsageCommandError(f"Usage command returned invalid JSON: {error}") from error


def _run_command(argv: Sequence[str], timeout_seconds: float) -> str:
    try:
        completed = subprocess.run(  # noqa: S603
            list(argv),
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as error:
        raise UsageCommandError(f"{argv[0]} not found. Install it: npm i -g ccusage") from error
    except subprocess.TimeoutExpired as error:
        raise UsageCommandError(f"{argv[0]} timed out after {timeout_seconds:g}s") from error
    except OSError as error:
        raise UsageCommandError(f"{argv[0]} failed to start: {error}") from error
    if completed.returncode != 0:
        detail = (completed.stderr or completed.stdout).strip()[:500]
        raise UsageCommandError(f"{argv[0]} exited with {completed.returncode}: {detail}")
    return completed.stdout


def _first_present(block: dict[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        value = block.get(name)
        if value is not None:
            return value
    return None


def _parse_time(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
