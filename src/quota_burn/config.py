"""Runtime configuration for thresholds, watch loop, execution and telemetry."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TELEMETRY_SOURCES = ("rate_limits", "billing_block")
WEEK_DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
# Room for the run-outcome tag plus some of the summary.
MIN_CONTEXT_MAX_CHARS = 64

_TIME_OF_DAY = re.compile(r"^\d{1,2}(:\d{1,2})?$")


class ConfigError(ValueError):
    """Configuration value out of range."""


@dataclass(slots=True)
class ThresholdSettings:
    """Run/skip thresholds for both telemetry models."""

    min_remaining_minutes: float = 60
    max_block_cost_usd: float = 15.0
    weekly_budget_usd: float = 100.0
    weekly_start_day: str = "monday"
    max_utilization: float = 0.80


@dataclass(slots=True)
class WatchSettings:
    """Watch-mode interval and quiet hours."""

    interval_minutes: float = 10
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None


@dataclass(slots=True)
class ExecutionSettings:
    """Defaults applied to every task execution."""

    model: str | None = None
    default_allowed_tools: str | None = None
    yolo: bool = False
    command: str = "claude"
    timeout_seconds: float = 1800
    context_max_chars: int = 4000


@dataclass(slots=True)
class TelemetrySettings:
    """Where usage telemetry comes from and how long to wait for it."""

    source: str = "rate_limits"
    timeout_seconds: float = 30.0
    credentials_path: Path = field(
        default_factory=lambda: Path.home() / ".claude" / ".credentials.json",
    )
    api_base_url: str = "https://api.anthropic.com"
    probe_model: str = "claude-sonnet-4-5-20250929"
    usage_command: str = "ccusage"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    thresholds: ThresholdSettings = field(default_factory=ThresholdSettings)
    watch: WatchSettings = field(default_factory=WatchSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    telemetry: TelemetrySettings = field(default_factory=TelemetrySettings)

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> Settings:
        """Merge a parsed config document over defaults, one section at a time."""

        defaults = cls()
        return cls(
            thresholds=_merge_section(defaults.thresholds, raw.get("thresholds"), "thresholds"),
            watch=_merge_section(defaults.watch, raw.get("watch"), "watch"),
            execution=_merge_section(defaults.execution, raw.get("execution"), "execution"),
            telemetry=_merge_section(defaults.telemetry, raw.get("telemetry"), "telemetry"),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        thresholds = self.thresholds
        if not 0 < thresholds.max_utilization <= 1:
            raise ConfigError("thresholds.maxUtilization must be in (0, 1].")
        if thresholds.min_remaining_minutes < 0:
            raise ConfigError("thresholds.minRemainingMinutes must be >= 0.")
        if thresholds.max_block_cost_usd < 0 or thresholds.weekly_budget_usd < 0:
            raise ConfigError("thresholds cost limits must be >= 0.")
        if thresholds.weekly_start_day.lower() not in WEEK_DAYS:
            raise ConfigError(
                f"thresholds.weeklyStartDay must be a week day name, "
                f"got {thresholds.weekly_start_day!r}.",
            )
        if self.watch.interval_minutes <= 0:
            raise ConfigError("watch.intervalMinutes must be > 0.")
        for name in ("quiet_hours_start", "quiet_hours_end"):
            value = getattr(self.watch, name)
            if value is not None and not _TIME_OF_DAY.match(str(value)):
                raise ConfigError(f"watch.{_camel(name)} must look like HH:MM, got {value!r}.")
        if self.execution.timeout_seconds <= 0:
            raise ConfigError("execution.timeoutSeconds must be > 0.")
        if self.execution.context_max_chars < MIN_CONTEXT_MAX_CHARS:
            raise ConfigError(
                f"execution.contextMaxChars must be >= {MIN_CONTEXT_MAX_CHARS}.",
            )
        if not self.execution.command.strip():
            raise ConfigError("execution.command must not be empty.")
        if self.telemetry.source not in TELEMETRY_SOURCES:
            raise ConfigError(
                f"telemetry.source must be one of {', '.join(TELEMETRY_SOURCES)}, "
                f"got {self.telemetry.source!r}.",
            )
        if self.telemetry.timeout_seconds <= 0:
            raise ConfigError("telemetry.timeoutSeconds must be > 0.")


@dataclass(slots=True)
class StoragePaths:
    """Durable files that live beside the task queue."""

    tasks_path: Path
    history_path: Path
    context_dir: Path
    reports_dir: Path

    @classmethod
    def for_tasks_file(cls, tasks_path: Path) -> StoragePaths:
        base = tasks_path.parent
        return cls(
            tasks_path=tasks_path,
            history_path=base / "history.json",
            context_dir=base / "context",
            reports_dir=base / "reports",
        )


def default_config_path() -> Path:
    return Path(os.getenv("QUOTA_BURN_CONFIG", "config.json"))


def default_tasks_path() -> Path:
    return Path(os.getenv("QUOTA_BURN_TASKS", "tasks.json"))


def load_settings(path: Path) -> Settings:
    """Load settings from a JSON file, falling back to defaults on any read problem."""

    try:
        raw = json.loads(path.read_text("utf-8"))
    except FileNotFoundError:
        logger.debug("No config at %s, using defaults", path)
        return Settings()
    except (OSError, ValueError) as error:
        logger.warning("Failed to read config %s: %s, using defaults", path, error)
        return Settings()

    if not isinstance(raw, dict):
        logger.warning("Config %s is not a JSON object, using defaults", path)
        return Settings()
    try:
        return Settings.from_mapping(raw)
    except (TypeError, ValueError) as error:
        logger.warning("Invalid config %s: %s, using defaults", path, error)
        return Settings()


def _merge_section(default: Any, raw: object, section: str) -> Any:
    if raw is None:
        return default
    if not isinstance(raw, dict):
        raise TypeError(f"config section {section!r} must be an object")

    known = {_camel(item.name): item for item in fields(default)}
    overrides: dict[str, Any] = {}
    for key, value in raw.items():
        item = known.get(key)
        if item is None:
            logger.debug("Ignoring unknown config key %s.%s", section, key)
            continue
        overrides[item.name] = _coerce(value, getattr(default, item.name), f"{section}.{key}")
    return replace(default, **overrides)


def _coerce(value: object, default: object, key: str) -> object:
    if value is None:
        return default
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise TypeError(f"{key} must be a boolean")
        return value
    if isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"{key} must be a number")
        return value
    if isinstance(default, Path):
        if not isinstance(value, str):
            raise TypeError(f"{key} must be a path string")
        return Path(value).expanduser()
    if isinstance(value, (list, tuple)) and key.endswith("Tools"):
        return ",".join(str(item) for item in value)
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


def _camel(name: str) -> str:
    head, *tail = name.split("_")
    return head + "".join(_CAMEL_PARTS.get(part, part.capitalize()) for part in tail)


_CAMEL_PARTS = {"usd": "USD"}
