from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import UTC, datetime

import allure
import pytest

from quota_burn.telemetry.billing import (
    BillingBlockSource,
    UsageCommandError,
    extract_blocks,
    normalize_block,
    week_start,
)

pytestmark = [
    allure.epic("Usage Telemetry"),
    allure.feature("Billing Blocks"),
]

NOW = datetime(2026, 3, 4, 15, 0, tzinfo=UTC)  # a Wednesday


class ScriptedRunner:
    """Answers usage CLI calls from a table keyed by the first flag after `blocks`."""

    def __init__(self, active: object, weekly: object) -> None:
        self.active = active
        self.weekly = weekly
        self.calls: list[list[str]] = []

    def __call__(self, argv: Sequence[str], timeout: float) -> str:
        self.calls.append(list(argv))
        if "--active" in argv:
            if isinstance(self.active, Exception):
                raise self.active
            return json.dumps(self.active)
        if isinstance(self.weekly, Exception):
            raise self.weekly
        return json.dumps(self.weekly)


def _source(runner: ScriptedRunner, start_day: str = "monday") -> BillingBlockSource:
    return BillingBlockSource(
        command="npx ccusage",
        weekly_start_day=start_day,
        timeout_seconds=5,
        runner=runner,
        clock=lambda: NOW,
    )


def test_week_start_goes_back_to_configured_day() -> None:
    assert week_start("monday", NOW) == datetime(2026, 3, 2, tzinfo=UTC)
    assert week_start("wednesday", NOW) == datetime(2026, 3, 4, tzinfo=UTC)
    assert week_start("thursday", NOW) == datetime(2026, 2, 26, tzinfo=UTC)


@pytest.mark.parametrize(
    "payload",
    [
        {"blocks": [{"costUSD": 1}]},
        [{"costUSD": 1}],
        {"costUSD": 1},
    ],
)
def test_extract_blocks_accepts_envelopes(payload: object) -> None:
    assert extract_blocks(payload) == [{"costUSD": 1}]


def test_extract_blocks_rejects_scalars() -> None:
    with pytest.raises(UsageCommandError):
        extract_blocks("nope")


def test_normalize_block_prefers_projection() -> None:
    block = normalize_block(
        {
            "startTime": "2026-03-04T13:00:00Z",
            "endTime": "2026-03-04T18:00:00Z",
            "totalCost": 3.25,
            "projection": {"remainingMinutes": 123.456},
        },
        NOW,
    )

    assert block.remaining_minutes == 123.5
    assert block.total_cost == 3.25
    assert block.start == datetime(2026, 3, 4, 13, 0, tzinfo=UTC)


def test_normalize_block_falls_back_to_end_time() -> None:
    block = normalize_block({"end": "2026-03-04T16:30:00Z", "cost": "1.5"}, NOW)

    assert block.remaining_minutes == 90.0
    assert block.total_cost == 1.5


def test_fetch_combines_active_block_and_weekly_cost() -> None:
    runner = ScriptedRunner(
        active={"blocks": [{"endTime": "2026-03-04T17:00:00Z", "costUSD": 4.0}]},
        weekly={"blocks": [{"costUSD": 4.0}, {"costUSD": 10.123}, {"totalCost": 1}]},
    )

    snapshot = _source(runner).fetch()

    assert snapshot is not None
    assert snapshot.block.remaining_minutes == 120.0
    assert snapshot.weekly_cost == 15.12
    assert runner.calls[0] == ["npx", "ccusage", "blocks", "--active", "--json"]
    assert runner.calls[1][-2:] == ["--since", "20260302"]


def test_fetch_without_active_block() -> None:
    snapshot = _source(ScriptedRunner(active={"blocks": []}, weekly=[])).fetch()

    assert snapshot is not None
    assert snapshot.block is None
    assert snapshot.weekly_cost == 0.0


def test_fetch_failure_returns_none() -> None:
    runner = ScriptedRunner(active=UsageCommandError("ccusage not found"), weekly=[])

    assert _source(runner).fetch() is None


def test_weekly_failure_counts_as_zero() -> None:
    runner = ScriptedRunner(
        active={"blocks": [{"costUSD": 1.0, "projection": {"remainingMinutes": 200}}]},
        weekly=UsageCommandError("timed out"),
    )

    snapshot = _source(runner).fetch()

    assert snapshot is not None
    assert snapshot.weekly_cost == 0.0
