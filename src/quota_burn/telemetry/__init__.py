"""Usage telemetry adapters."""

from quota_burn.config import Settings
from quota_burn.telemetry.billing import BillingBlockSource
from quota_burn.telemetry.rate_limits import WINDOW_LABELS, RateLimitProbe
from quota_burn.telemetry.snapshot import (
    BillingBlock,
    BillingSnapshot,
    RateLimitSnapshot,
    UsageSnapshot,
    UsageSource,
    UsageWindow,
)


def build_usage_source(settings: Settings) -> UsageSource:
    """Create the telemetry adapter selected by `telemetry.source`."""

    telemetry = settings.telemetry
    if telemetry.source == "billing_block":
        return BillingBlockSource(
            command=telemetry.usage_command,
            weekly_start_day=settings.thresholds.weekly_start_day,
            timeout_seconds=telemetry.timeout_seconds,
        )
    return RateLimitProbe(
        credentials_path=telemetry.credentials_path,
        api_base_url=telemetry.api_base_url,
        model=telemetry.probe_model,
        timeout_seconds=telemetry.timeout_seconds,
    )


__all__ = [
    "WINDOW_LABELS",
    "BillingBlock",
    "BillingBlockSource",
    "BillingSnapshot",
    "RateLimitProbe",
    "RateLimitSnapshot",
    "UsageSnapshot",
    "UsageSource",
    "UsageWindow",
    "build_usage_source",
]
