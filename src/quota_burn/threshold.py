"""Pure run/skip decision engine over usage snapshots."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from quota_burn.config import ThresholdSettings
from quota_burn.telemetry.snapshot import (
    BillingSnapshot,
    RateLimitSnapshot,
    UsageSnapshot,
    UsageWindow,
)

MINUTES_PER_DAY = 24 * 60


@dataclass(slots=True, frozen=True)
class Decision:
    """Outcome of threshold evaluation; `reason` always carries the compared numbers."""

    should_run: bool
    reason: str
    available_budget: float | None = None
    binding_window: str | None = None
    utilization: float | None = None


def evaluate(
    snapshot: UsageSnapshot | None,
    thresholds: ThresholdSettings,
    *,
    now: datetime | None = None,
) -> Decision:
    """Decide whether spare capacity allows running a task right now.

    A `None` snapshot means the telemetry fetch failed and always skips.
    """

    if isinstance(snapshot, BillingSnapshot):
        return evaluate_billing_block(snapshot, thresholds)
    if isinstance(snapshot, RateLimitSnapshot):
        return evaluate_rate_limits(snapshot, thresholds, now=now)
    return Decision(should_run=False, reason="Failed to fetch usage telemetry")


def evaluate_billing_block(snapshot: BillingSnapshot, thresholds: ThresholdSettings) -> Decision:
    block = snapshot.block
    if block is None:
        return Decision(should_run=False, reason="No active billing block", available_budget=0)

    if block.remaining_minutes < thresholds.min_remaining_minutes:
        return Decision(
            should_run=False,
            reason=(
                f"Remaining {block.remaining_minutes:.1f} min < minimum "
                f"{thresholds.min_remaining_minutes:g} min"
            ),
            available_budget=0,
        )

    if block.total_cost > thresholds.max_block_cost_usd:
        return Decision(
            should_run=False,
            reason=(
                f"Block cost ${block.total_cost:.2f} > max "
                f"${thresholds.max_block_cost_usd:.2f} (well-used)"
            ),
            available_budget=0,
        )

    if snapshot.weekly_cost >= thresholds.weekly_budget_usd:
        return Decision(
            should_run=False,
            reason=(
                f"Weekly cost ${snapshot.weekly_cost:.2f} >= budget "
                f"${thresholds.weekly_budget_usd:.2f}"
            ),
            available_budget=0,
        )

    budget = available_budget(snapshot, thresholds)
    return Decision(
        should_run=True,
        reason=(
            f"Block has {block.remaining_minutes:.1f} min left, cost "
            f"${block.total_cost:.2f}; weekly ${snapshot.weekly_cost:.2f} / "
            f"${thresholds.weekly_budget_usd:.2f}; budget ${budget:.2f} available"
        ),
        available_budget=budget,
    )


def available_budget(snapshot: BillingSnapshot, thresholds: ThresholdSettings) -> float:
    """Spend still allowed by both the weekly cap and the per-block cap, in whole cents."""

    block_cost = snapshot.block.total_cost if snapshot.block is not None else 0.0
    weekly_left = thresholds.weekly_budget_usd - snapshot.weekly_cost
    block_left = thresholds.max_block_cost_usd - block_cost
    return round(min(weekly_left, block_left), 2)


def evaluate_rate_limits(
    snapshot: RateLimitSnapshot,
    thresholds: ThresholdSettings,
    *,
    now: datetime | None = None,
) -> Decision:
    if snapshot.rate_limited:
        return Decision(
            should_run=False,
            reason=f"Currently rate limited ({snapshot.status_code})",
        )

    windows = snapshot.windows
    if not windows:
        return Decision(should_run=False, reason="No rate limit windows found in response")

    for name, window in windows.items():
        if not window.is_allowed:
            used = (
                f" ({_pct(window.utilization)}% used)" if window.utilization is not None else ""
            )
            return Decision(
                should_run=False,
                reason=f'Window "{name}" is {window.status}{used}',
                binding_window=name,
                utilization=window.utilization,
            )

    name, window = binding_window(snapshot)
    utilization = window.utilization or 0.0
    max_utilization = thresholds.max_utilization

    if utilization >= max_utilization:
        return Decision(
            should_run=False,
            reason=(
                f'Window "{name}" at {_pct(utilization)}% utilization '
                f"(>= {_pct(max_utilization)}% threshold, well-used)"
            ),
            binding_window=name,
            utilization=utilization,
        )

    reset_info = ""
    if window.reset_at:
        current = now or datetime.now().astimezone()
        seconds_left = window.reset_at - current.timestamp()
        if seconds_left > 0:
            reset_info = f", resets {format_duration(seconds_left)}"

    return Decision(
        should_run=True,
        reason=(
            f'Window "{name}" at {_pct(utilization)}% '
            f"({_pct(1 - utilization)}% remaining{reset_info})"
        ),
        binding_window=name,
        utilization=utilization,
    )


def binding_window(snapshot: RateLimitSnapshot) -> tuple[str, UsageWindow]:
    """Representative claim when it names a present window, else the most utilized one."""

    claim = snapshot.representative_claim
    if claim and claim in snapshot.windows:
        return claim, snapshot.windows[claim]
    return max(snapshot.windows.items(), key=lambda item: item[1].utilization or 0.0)


def is_quiet_hours(start: str | None, end: str | None, *, now: datetime | None = None) -> bool:
    """Whether local wall-clock time falls in the suppressed range.

    `start <= end` suppresses [start, end); otherwise the range wraps midnight.
    """

    if start is None or end is None:
        return False
    current = now or datetime.now()
    minutes = current.hour * 60 + current.minute
    start_minutes = parse_time_of_day(start)
    end_minutes = parse_time_of_day(end)

    if start_minutes <= end_minutes:
        return start_minutes <= minutes < end_minutes
    return minutes >= start_minutes or minutes < end_minutes


def parse_time_of_day(value: str) -> int:
    hours, _, minutes = str(value).partition(":")
    return (int(hours) * 60 + int(minutes or 0)) % MINUTES_PER_DAY


def format_duration(seconds: float) -> str:
    if seconds <= 0:
        return "now"
    total_minutes = math.ceil(seconds / 60)
    if total_minutes < 60:
        return f"in {total_minutes}m"
    hours, minutes = divmod(total_minutes, 60)
    if hours < 24:
        return f"in {hours}h {minutes}m"
    days, hours = divmod(hours, 24)
    return f"in {days}d {hours}h"


def _pct(fraction: float) -> str:
    return f"{fraction * 100:.1f}"
