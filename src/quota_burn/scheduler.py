"""Watch loop that repeats cycles on an interval, honoring quiet hours and stop signals."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from quota_burn.config import WatchSettings
from quota_burn.threshold import is_quiet_hours

logger = logging.getLogger(__name__)

DEFAULT_SLICE_SECONDS = 5.0


@dataclass(slots=True)
class WatchSummary:
    """Aggregate watch-loop counters for CLI reporting."""

    cycles: int = 0
    quiet_skips: int = 0
    errors: int = 0
    stop_signal: str | None = None


class WatchScheduler:
    """Runs `run_cycle` every `interval_minutes` until asked to stop.

    A cycle in flight always finishes; the stop flag is only observed between
    sleep slices and before a new cycle starts.
    """

    def __init__(
        self,
        run_cycle: Callable[[], object],
        watch: WatchSettings,
        *,
        slice_seconds: float = DEFAULT_SLICE_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.run_cycle = run_cycle
        self.watch = watch
        self.slice_seconds = slice_seconds
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "request") -> None:
        if not self._stop_requested:
            logger.info("Shutting down (%s)...", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def run(self, *, max_cycles: int | None = None) -> WatchSummary:
        summary = WatchSummary()
        interval_seconds = self.watch.interval_minutes * 60
        logger.info("Watch mode - checking every %g minutes", self.watch.interval_minutes)

        with self._signal_handlers():
            while not self._stop_requested:
                if self._in_quiet_hours():
                    logger.debug(
                        "Quiet hours (%s - %s), skipping cycle",
                        self.watch.quiet_hours_start,
                        self.watch.quiet_hours_end,
                    )
                    summary.quiet_skips += 1
                else:
                    summary.cycles += 1
                    try:
                        self.run_cycle()
                    except Exception:
                        summary.errors += 1
                        logger.exception("Cycle error")

                if max_cycles is not None and summary.cycles + summary.quiet_skips >= max_cycles:
                    break
                self._sleep_with_stop(interval_seconds)

        summary.stop_signal = self._stop_signal_name
        logger.info("Watch mode stopped.")
        return summary

    def _in_quiet_hours(self) -> bool:
        return is_quiet_hours(
            self.watch.quiet_hours_start,
            self.watch.quiet_hours_end,
            now=self._clock(),
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = self._monotonic() + seconds
        while not self._stop_requested:
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                return
            self._sleep(min(self.slice_seconds, remaining))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass
