"""CLI entrypoint for quota-burn."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import rich_click as click

from quota_burn import __version__
from quota_burn.config import ConfigError, default_config_path, default_tasks_path
from quota_burn.controllers import (
    BurnCliController,
    ListTasksCommand,
    RunCommand,
    StatusCommand,
    TaskMutateCommand,
    WatchCommand,
)
from quota_burn.tasks import TaskStateError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BurnCliController()

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class CliPaths:
    """File locations shared by all subcommands."""

    config_path: Path
    tasks_path: Path


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="quota-burn")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Path to config.json (default: $QUOTA_BURN_CONFIG or ./config.json).",
)
@click.option(
    "--tasks",
    "tasks_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Path to tasks.json (default: $QUOTA_BURN_TASKS or ./tasks.json).",
)
@click.option("--verbose", "-v", is_flag=True, help="Detailed output.")
@click.pass_context
def quota_burn(
    ctx: click.Context,
    config_path: Path | None,
    tasks_path: Path | None,
    verbose: bool,
) -> None:
    """Run queued agent tasks when subscription quota has spare capacity.

    Without a subcommand, runs one check cycle (same as `run`).
    """

    _configure_logging(verbose=verbose)
    ctx.obj = CliPaths(
        config_path=config_path or default_config_path(),
        tasks_path=tasks_path or default_tasks_path(),
    )
    if ctx.invoked_subcommand is None:
        ctx.invoke(run)


@quota_burn.command("run")
@click.option("--dry-run", "-d", is_flag=True, help="Evaluate and select only; change nothing.")
@click.pass_obj
def run(paths: CliPaths, dry_run: bool = False) -> None:
    """Run one check cycle and execute a task if conditions allow."""

    _emit_lines(
        _guard(
            CONTROLLER.run_once,
            RunCommand(
                config_path=paths.config_path,
                tasks_path=paths.tasks_path,
                dry_run=dry_run,
            ),
        ),
    )


@quota_burn.command("dry-run")
@click.pass_obj
def dry_run_command(paths: CliPaths) -> None:
    """Show what one cycle would run, without executing or writing anything."""

    _emit_lines(
        _guard(
            CONTROLLER.run_once,
            RunCommand(config_path=paths.config_path, tasks_path=paths.tasks_path, dry_run=True),
        ),
    )


@quota_burn.command("watch")
@click.option("--dry-run", "-d", is_flag=True, help="Evaluate and select only; change nothing.")
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many checks (quiet-hour skips included).",
)
@click.pass_obj
def watch(paths: CliPaths, dry_run: bool, max_cycles: int | None) -> None:
    """Repeat check cycles every `watch.intervalMinutes` until interrupted."""

    _emit_lines(
        _guard(
            CONTROLLER.watch,
            WatchCommand(
                config_path=paths.config_path,
                tasks_path=paths.tasks_path,
                dry_run=dry_run,
                max_cycles=max_cycles,
            ),
        ),
    )


@quota_burn.command("status")
@click.option(
    "--history",
    "history_count",
    type=click.IntRange(min=0, max=100),
    default=10,
    show_default=True,
    help="How many recent executions to show.",
)
@click.pass_obj
def status(paths: CliPaths, history_count: int) -> None:
    """Show usage, threshold decision, task queue and recent history."""

    _emit_lines(
        _guard(
            CONTROLLER.status,
            StatusCommand(
                config_path=paths.config_path,
                tasks_path=paths.tasks_path,
                history_count=history_count,
            ),
        ),
    )


@quota_burn.command("tasks")
@click.pass_obj
def list_tasks(paths: CliPaths) -> None:
    """List queued tasks."""

    _emit_lines(CONTROLLER.list_tasks(ListTasksCommand(tasks_path=paths.tasks_path)))


@quota_burn.command("enable")
@click.argument("task_id")
@click.pass_obj
def enable(paths: CliPaths, task_id: str) -> None:
    """Switch an `off` task to `on`."""

    _emit_lines(
        _guard(CONTROLLER.enable, TaskMutateCommand(tasks_path=paths.tasks_path, task_id=task_id)),
    )


@quota_burn.command("reset")
@click.argument("task_id")
@click.pass_obj
def reset(paths: CliPaths, task_id: str) -> None:
    """Put a `done`, `failed` or stuck `running` task back to `on`."""

    _emit_lines(
        _guard(CONTROLLER.reset, TaskMutateCommand(tasks_path=paths.tasks_path, task_id=task_id)),
    )


def _guard(handler: Callable[[Any], list[str]], command: object) -> list[str]:
    try:
        return handler(command)
    except TaskStateError as error:
        raise click.ClickException(str(error)) from error
    except ConfigError as error:
        raise click.UsageError(f"Invalid configuration: {error}") from error


def _configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
    # basicConfig is a no-op once handlers exist; keep the requested level anyway.
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    quota_burn()
