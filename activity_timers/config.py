"""Configuration defaults for the timer engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

DB_PATH_ENV = "ACTIVITY_TIMERS_DB"


def default_db_path() -> Path:
    """Database location: $ACTIVITY_TIMERS_DB, else ~/.local/share/activity-timers."""
    override = os.environ.get(DB_PATH_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".local" / "share" / "activity-timers" / "timers.db"


@dataclass(slots=True)
class DisplaySettings:
    """Intervals used by the live display driver."""

    tick_interval: timedelta = timedelta(seconds=1)
    reconcile_interval: timedelta = timedelta(seconds=30)

    @classmethod
    def from_intervals(
        cls,
        tick_seconds: float = 1.0,
        reconcile_seconds: float | None = None,
    ) -> "DisplaySettings":
        reconcile = reconcile_seconds if reconcile_seconds is not None else max(tick_seconds * 30, 30.0)
        if tick_seconds <= 0 or reconcile <= 0:
            raise ValueError("display intervals must be positive")
        return cls(
            tick_interval=timedelta(seconds=tick_seconds),
            reconcile_interval=timedelta(seconds=reconcile),
        )
