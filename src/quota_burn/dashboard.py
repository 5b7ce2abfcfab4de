"""Read-only status rendering for the CLI."""

from __future__ import annotations

from datetime import datetime

from quota_burn.config import Settings
from quota_burn.history import HistoryRecord, history_rows
from quota_burn.tasks import TaskQueue, task_summary_rows
from quota_burn.telemetry.rate_limits import WINDOW_LABELS
from quota_burn.telemetry.snapshot import BillingSnapshot, RateLimitSnapshot, UsageSnapshot
from quota_burn.threshold import Decision, format_duration, is_quiet_hours

BAR_WIDTH = 30


def render_status_lines(  # noqa: PLR0913
    *,
    settings: Settings,
    snapshot: UsageSnapshot | None,
    decision: Decision,
    queue: TaskQueue,
    recent: list[HistoryRecord],
    now: datetime,
) -> list[str]:
    """Render usage, decision, queue and history sections."""

    lines: list[str] = []
    lines += _header("Usage")
    lines += _usage_lines(snapshot, settings, now)

    lines += _header("Threshold Evaluation")
    lines.append(f"  Should run: {'YES' if decision.should_run else 'NO'}")
    lines.append(f"  Reason:     {decision.reason}")
    if decision.available_budget:
        lines.append(f"  Budget:     ${decision.available_budget:.2f}")
    watch = settings.watch
    if watch.quiet_hours_start is not None and watch.quiet_hours_end is not None:
        quiet = is_quiet_hours(watch.quiet_hours_start, watch.quiet_hours_end, now=now)
        lines.append(
            f"  Quiet hours: {watch.quiet_hours_start} - {watch.quiet_hours_end}"
            f" ({'active' if quiet else 'inactive'})",
        )

    lines += _header("Task Queue")
    lines += render_table(task_summary_rows(queue)) or ["  No tasks defined"]

    lines += _header("Recent History")
    lines += render_table(history_rows(recent)) or ["  No execution history"]
    return lines


def render_table(rows: list[dict[str, str]]) -> list[str]:
    if not rows:
        return []
    keys = list(rows[0])
    widths = [max(len(key), *(len(str(row.get(key, ""))) for row in rows)) for key in keys]

    def fmt(values: list[str]) -> str:
        cells = zip(values, widths, strict=True)
        return "|".join(f" {value.ljust(width)} " for value, width in cells)

    return [
        fmt([key.upper() for key in keys]),
        "+".join("-" * (width + 2) for width in widths),
        *(fmt([str(row.get(key, "")) for key in keys]) for row in rows),
    ]


def usage_bar(utilization: float, width: int = BAR_WIDTH) -> str:
    filled = max(0, min(width, round(utilization * width)))
    return "[" + "#" * filled + "-" * (width - filled) + "]"


def _usage_lines(snapshot: UsageSnapshot | None, settings: Settings, now: datetime) -> list[str]:
    if snapshot is None:
        return ["  Usage telemetry unavailable"]
    if isinstance(snapshot, BillingSnapshot):
        return _billing_lines(snapshot, settings)
    return _window_lines(snapshot, now)


def _billing_lines(snapshot: BillingSnapshot, settings: Settings) -> list[str]:
    lines: list[str] = []
    block = snapshot.block
    if block is None:
        lines.append("  No active block")
    else:
        if block.start is not None:
            lines.append(f"  Start:     {block.start.astimezone():%Y-%m-%d %H:%M}")
        if block.end is not None:
            lines.append(f"  End:       {block.end.astimezone():%Y-%m-%d %H:%M}")
        lines.append(f"  Remaining: {block.remaining_minutes:g} minutes")
        lines.append(f"  Cost:      ${block.total_cost:.2f}")
    lines.append(
        f"  This week: ${snapshot.weekly_cost:.2f} / ${settings.thresholds.weekly_budget_usd:.2f}",
    )
    return lines


def _window_lines(snapshot: RateLimitSnapshot, now: datetime) -> list[str]:
    lines: list[str] = []
    if snapshot.subscription:
        lines.append(f"  Subscription: {snapshot.subscription}")
    if snapshot.overall_status:
        lines.append(f"  Overall:      {snapshot.overall_status}")
    if snapshot.representative_claim:
        lines.append(f"  Binding:      {snapshot.representative_claim}")
    for name, window in snapshot.windows.items():
        utilization = window.utilization or 0.0
        label = WINDOW_LABELS.get(name, name)
        state = "OK" if window.is_allowed else "BLOCKED"
        reset = ""
        if window.reset_at:
            reset = f" | resets {format_duration(window.reset_at - now.timestamp())}"
        lines.append(f"  {label} [{state}]")
        lines.append(
            f"    {usage_bar(utilization)} {utilization * 100:.1f}% used "
            f"({(1 - utilization) * 100:.1f}% remaining){reset}",
        )
    if not snapshot.windows:
        lines.append("  No rate limit windows reported")
    return lines


def _header(title: str) -> list[str]:
    return ["", "=" * 60, f"  {title}", "=" * 60]
