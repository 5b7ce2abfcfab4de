"""Run queued CLI agent tasks when subscription quota has spare capacity."""

__version__ = "0.1.0"
