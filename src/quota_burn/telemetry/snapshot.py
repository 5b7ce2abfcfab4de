"""Canonical usage snapshot shapes shared by all telemetry sources."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

STATUS_ALLOWED = "allowed"
HTTP_TOO_MANY_REQUESTS = 429


@dataclass(slots=True)
class UsageWindow:
    """One rolling rate-limit window."""

    utilization: float | None = None
    status: str | None = None
    reset_at: int | None = None

    @property
    def is_allowed(self) -> bool:
        return self.status is None or self.status == STATUS_ALLOWED


@dataclass(slots=True)
class RateLimitSnapshot:
    """Rate-limit-window telemetry; windows keep the order the source reported them in."""

    windows: dict[str, UsageWindow] = field(default_factory=dict)
    representative_claim: str | None = None
    overall_status: str | None = None
    status_code: int = 200
    reset_at: int | None = None
    fallback_percentage: float | None = None
    subscription: str | None = None
    tier: str | None = None

    @property
    def rate_limited(self) -> bool:
        return self.status_code == HTTP_TOO_MANY_REQUESTS


@dataclass(slots=True)
class BillingBlock:
    """Active billing block with its own remaining time and cost."""

    start: datetime | None
    end: datetime | None
    remaining_minutes: float
    total_cost: float


@dataclass(slots=True)
class BillingSnapshot:
    """Billing-block telemetry: the active block (if any) plus this week's spend."""

    block: BillingBlock | None
    weekly_cost: float = 0.0


UsageSnapshot = RateLimitSnapshot | BillingSnapshot


class UsageSource(Protocol):
    """Protocol implemented by telemetry adapters."""

    def fetch(self) -> UsageSnapshot | None:
        """Return a complete snapshot, or None when the fetch failed."""

    def close(self) -> None:
        """Release any connection the adapter holds."""
