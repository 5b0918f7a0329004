"""Summaries over collections of timer snapshots.

Pure functions: nothing here touches the store or mutates an entity. Every
entity in one summary is measured at the same ``now``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any, Union

from pydantic import BaseModel, Field, ValidationError

from activity_timers.machine import elapsed_seconds
from activity_timers.models import DEFAULT_CATEGORY, Status, TrackedEntity

logger = logging.getLogger(__name__)

UNKNOWN_STATUS = "unknown"

Snapshot = Union[TrackedEntity, Mapping[str, Any]]


class CategoryTotals(BaseModel):
    count: int = 0
    seconds: int = 0


def _empty_status_counts() -> dict[str, int]:
    return {status.value: 0 for status in Status}


class ActivityTotals(BaseModel):
    """Totals for a collection of timers.

    ``by_status`` always has the three lifecycle statuses; records with a
    missing or unrecognised status are counted under "unknown" so that
    ``sum(by_status.values()) == count`` holds.
    """

    total_seconds: int = 0
    count: int = 0
    active_count: int = 0
    by_status: dict[str, int] = Field(default_factory=_empty_status_counts)
    by_category: dict[str, CategoryTotals] = Field(default_factory=dict)


class RecentTotals(ActivityTotals):
    period: str


def _measure(snapshot: Snapshot, now: datetime) -> tuple[int, str, str]:
    """Return (seconds, status, category) for one snapshot.

    Malformed records measure as 0 seconds but keep whatever status and
    category they carry.
    """
    if isinstance(snapshot, TrackedEntity):
        return elapsed_seconds(snapshot, now), snapshot.status.value, snapshot.category

    if not isinstance(snapshot, Mapping):
        logger.warning("Malformed timer record of type %s counted with 0s", type(snapshot).__name__)
        return 0, UNKNOWN_STATUS, DEFAULT_CATEGORY

    try:
        entity = TrackedEntity.model_validate(snapshot)
    except ValidationError as e:
        logger.warning(
            "Malformed timer %s counted with 0s: %d validation error(s)",
            snapshot.get("id", "<no id>"),
            e.error_count(),
        )
        status = snapshot.get("status")
        if isinstance(status, Status):
            status = status.value
        if not isinstance(status, str) or status not in {s.value for s in Status}:
            status = UNKNOWN_STATUS
        category = snapshot.get("category")
        if not isinstance(category, str) or not category:
            category = DEFAULT_CATEGORY
        return 0, status, category
    return elapsed_seconds(entity, now), entity.status.value, entity.category


def summarize(entities: Iterable[Snapshot], now: datetime) -> ActivityTotals:
    """Reduce timer snapshots to totals by status and category.

    Args:
        entities: TrackedEntity objects or raw record mappings.
        now: Instant at which active timers are measured.

    Returns:
        ActivityTotals. Never raises on malformed records.
    """
    totals = ActivityTotals()
    for snapshot in entities:
        seconds, status, category = _measure(snapshot, now)

        totals.count += 1
        totals.total_seconds += seconds
        totals.by_status[status] = totals.by_status.get(status, 0) + 1
        if status == Status.ACTIVE.value:
            totals.active_count += 1

        bucket = totals.by_category.setdefault(category, CategoryTotals())
        bucket.count += 1
        bucket.seconds += seconds

    return totals


def select_for_report(
    entities: Iterable[TrackedEntity],
    section: str | None = None,
) -> list[TrackedEntity]:
    """Completed timers flagged for report inclusion, optionally one section."""
    selected = [e for e in entities if e.include_in_report and e.status == Status.COMPLETED]
    if section is not None:
        selected = [e for e in selected if e.report_section == section]
    return selected


def summarize_recent(
    entities: Iterable[TrackedEntity],
    now: datetime,
    days: int = 30,
) -> RecentTotals:
    """Summarize timers started within the last `days` days."""
    cutoff = now - timedelta(days=days)
    recent = [e for e in entities if e.start_time >= cutoff]
    totals = summarize(recent, now)
    return RecentTotals(**totals.model_dump(), period=f"Last {days} days")
