"""Test doubles and builders shared across test modules."""

from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

from quota_burn.telemetry.snapshot import (
    BillingBlock,
    BillingSnapshot,
    RateLimitSnapshot,
    UsageSnapshot,
    UsageWindow,
)

FAKE_AGENT_SCRIPT = """
import json
import os
import sys
import time
from pathlib import Path

args = sys.argv[1:]
prompt = args[args.index("-p") + 1]
Path(os.environ["FAKE_AGENT_LOG"]).write_text(
    json.dumps({"argv": args, "cwd": os.getcwd(), "prompt": prompt}), "utf-8"
)
mode = os.environ.get("FAKE_AGENT_MODE", "ok")
if mode == "sleep":
    time.sleep(30)
if mode == "crash":
    sys.stderr.write("agent exploded")
    raise SystemExit(3)
if mode == "text":
    print("plain text, not json")
    raise SystemExit(0)
if mode == "is_error":
    print(json.dumps({"is_error": True, "result": "model refused", "total_cost_usd": 0.01}))
    raise SystemExit(0)
print(json.dumps({"result": "did the thing", "total_cost_usd": 0.42}))
"""


class FakeUsageSource:
    """Returns a fixed snapshot and counts fetches."""

    def __init__(self, snapshot: UsageSnapshot | None) -> None:
        self.snapshot = snapshot
        self.calls = 0
        self.closed = False

    def fetch(self) -> UsageSnapshot | None:
        self.calls += 1
        return self.snapshot

    def close(self) -> None:
        self.closed = True


def window_snapshot(utilization: float, **kwargs) -> RateLimitSnapshot:
    return RateLimitSnapshot(
        windows={"5h": UsageWindow(utilization=utilization, status="allowed")},
        **kwargs,
    )


def billing_snapshot(
    *,
    remaining: float = 180,
    cost: float = 2.0,
    weekly: float = 20.0,
) -> BillingSnapshot:
    return BillingSnapshot(
        block=BillingBlock(start=None, end=None, remaining_minutes=remaining, total_cost=cost),
        weekly_cost=weekly,
    )


def write_tasks(path: Path, tasks: list[dict], **extra) -> Path:
    path.write_text(json.dumps({**extra, "tasks": tasks}, indent=2) + "\n", "utf-8")
    return path


def read_tasks(path: Path) -> dict[str, dict]:
    return {task["id"]: task for task in json.loads(path.read_text("utf-8"))["tasks"]}


def fake_agent_command(script: Path) -> str:
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
