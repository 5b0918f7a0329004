"""Interval state machine for timers.

A timer starts ``active``, may cycle ``active <-> paused`` any number of
times, and ends ``completed``. Elapsed active time is derived from the stored
instants:

    completed: total_seconds (frozen at completion)
    paused:    floor((paused_at - start_time) - total_paused_seconds)
    active:    floor((now - start_time) - total_paused_seconds)

The three branches agree at every transition instant, so a display never
jumps when a timer is paused or resumed.

Transitions are computed by pure functions returning a field patch; the
``IntervalStateMachine`` class applies them against the store with a
read-then-conditionally-write cycle.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from activity_timers.clock import Clock, SystemClock
from activity_timers.errors import ConcurrencyConflict, IllegalTransition, InvalidState
from activity_timers.models import (
    DEFAULT_CATEGORY,
    DEFAULT_REPORT_SECTION,
    DETAIL_FIELDS,
    KINDS,
    Status,
    TrackedEntity,
)
from activity_timers.store import TimerStore

logger = logging.getLogger(__name__)

Patch = dict[str, Any]


def _clamp_seconds(seconds: float, what: str, entity_id: str) -> int:
    """Truncate to whole seconds, clamping negatives to zero.

    A negative duration means clock skew between writers or bad data upstream,
    so it is always logged.
    """
    value = math.floor(seconds)
    if value < 0:
        logger.warning(
            "Clock skew clamped: %s for timer %s was %ss, using 0",
            what,
            entity_id,
            value,
        )
        return 0
    return value


def elapsed_seconds(entity: TrackedEntity, now: datetime) -> int:
    """Elapsed active seconds of a timer as of now. Never negative."""
    if entity.status == Status.COMPLETED:
        return entity.total_seconds

    if entity.status == Status.PAUSED:
        if entity.paused_at is None:
            logger.warning("Paused timer %s has no paused_at; measuring to now", entity.id)
            reference = now
        else:
            reference = entity.paused_at
    else:
        reference = now

    span = (reference - entity.start_time).total_seconds()
    return _clamp_seconds(span - entity.total_paused_seconds, "elapsed time", entity.id)


def _history(entity: TrackedEntity) -> list[dict[str, Any]]:
    return [interval.model_dump() for interval in entity.pause_history]


def _fold_pause(entity: TrackedEntity, now: datetime) -> tuple[int, list[dict[str, Any]]]:
    """Close the in-flight pause: new total_paused_seconds and pause history."""
    history = _history(entity)
    if entity.paused_at is None:
        logger.warning("Paused timer %s has no paused_at; pause adds 0s", entity.id)
        paused_for = 0
    else:
        paused_for = _clamp_seconds(
            (now - entity.paused_at).total_seconds(), "pause duration", entity.id
        )
    if history and history[-1]["resumed_at"] is None:
        history[-1]["resumed_at"] = now
    return entity.total_paused_seconds + paused_for, history


def _clean_details(details: Mapping[str, Any] | None) -> Patch:
    if not details:
        return {}
    return {
        name: value
        for name, value in details.items()
        if name in DETAIL_FIELDS and value is not None
    }


def pause_patch(entity: TrackedEntity, now: datetime, reason: str = "") -> Patch:
    if entity.status != Status.ACTIVE:
        raise IllegalTransition(
            "pause requires active", entity_id=entity.id, status=entity.status.value, action="pause"
        )
    history = _history(entity)
    history.append({"paused_at": now, "resumed_at": None, "reason": reason})
    return {"status": Status.PAUSED, "paused_at": now, "pause_history": history}


def resume_patch(entity: TrackedEntity, now: datetime) -> Patch:
    if entity.status != Status.PAUSED:
        raise IllegalTransition(
            "resume requires paused", entity_id=entity.id, status=entity.status.value, action="resume"
        )
    total_paused, history = _fold_pause(entity, now)
    return {
        "status": Status.ACTIVE,
        "paused_at": None,
        "total_paused_seconds": total_paused,
        "pause_history": history,
    }


def complete_patch(
    entity: TrackedEntity,
    now: datetime,
    details: Mapping[str, Any] | None = None,
) -> Patch:
    if entity.status == Status.COMPLETED:
        raise IllegalTransition(
            "already completed", entity_id=entity.id, status=entity.status.value, action="complete"
        )

    total_paused = entity.total_paused_seconds
    history = _history(entity)
    if entity.status == Status.PAUSED:
        total_paused, history = _fold_pause(entity, now)

    span = (now - entity.start_time).total_seconds()
    total_seconds = _clamp_seconds(span - total_paused, "total duration", entity.id)

    return {
        **_clean_details(details),
        "status": Status.COMPLETED,
        "end_time": now,
        "paused_at": None,
        "total_paused_seconds": total_paused,
        "total_seconds": total_seconds,
        "pause_history": history,
    }


def details_patch(entity: TrackedEntity, details: Mapping[str, Any]) -> Patch:
    if entity.status == Status.COMPLETED:
        raise IllegalTransition(
            "completed timers cannot be edited",
            entity_id=entity.id,
            status=entity.status.value,
            action="update",
        )
    return _clean_details(details)


class IntervalStateMachine:
    """Applies timer transitions against a TimerStore.

    Every transition reads a fresh snapshot, computes the patch, and writes it
    conditionally on the status and version it read. A rejected write is re-read and
    re-checked once; if the re-check makes the transition illegal the caller
    gets IllegalTransition, otherwise a second rejection is raised as
    ConcurrencyConflict.
    """

    def __init__(self, store: TimerStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def start(
        self,
        owner_id: str,
        category: str = DEFAULT_CATEGORY,
        *,
        kind: str = "activity",
        name: str | None = None,
        project_id: str | None = None,
        notes: str = "",
        include_in_report: bool = True,
        report_section: str = DEFAULT_REPORT_SECTION,
        metadata: Mapping[str, Any] | None = None,
        entity_id: str | None = None,
    ) -> TrackedEntity:
        """Create a new timer in the active state.

        Raises:
            ValueError: If owner_id is empty or kind is unknown.
            InvalidState: If entity_id names an existing timer.
        """
        if not owner_id:
            raise ValueError("owner_id is required to start a timer")
        if kind not in KINDS:
            raise ValueError(f"Unknown timer kind: {kind}")
        if entity_id is not None and self._store.exists(entity_id):
            raise InvalidState(f"Timer {entity_id} already exists")

        fields = {
            "kind": kind,
            "owner_id": owner_id,
            "status": Status.ACTIVE,
            "start_time": self._clock.now(),
            "paused_at": None,
            "total_paused_seconds": 0,
            "end_time": None,
            "total_seconds": 0,
            "category": category or DEFAULT_CATEGORY,
            "name": name or "Untitled Activity",
            "project_id": project_id,
            "notes": notes,
            "include_in_report": include_in_report,
            "report_section": report_section,
            "pause_history": [],
            "metadata": dict(metadata or {}),
        }
        new_id = self._store.create(fields, entity_id=entity_id)
        logger.info("Started %s timer %s for %s (%s)", kind, new_id, owner_id, fields["category"])
        return self._store.get(new_id)

    def pause(self, entity_id: str, reason: str = "") -> TrackedEntity:
        return self._transition(entity_id, lambda entity, now: pause_patch(entity, now, reason))

    def resume(self, entity_id: str) -> TrackedEntity:
        return self._transition(entity_id, resume_patch)

    def complete(
        self,
        entity_id: str,
        details: Mapping[str, Any] | None = None,
    ) -> TrackedEntity:
        """Stop a timer and freeze its total_seconds.

        Raises IllegalTransition with ``already_completed`` set if another
        caller completed it first.
        """
        return self._transition(
            entity_id, lambda entity, now: complete_patch(entity, now, details)
        )

    def update_details(self, entity_id: str, details: Mapping[str, Any]) -> TrackedEntity:
        """Edit descriptive fields of an open timer."""
        return self._transition(entity_id, lambda entity, now: details_patch(entity, details))

    def elapsed(self, entity_id: str) -> int:
        return elapsed_seconds(self._store.get(entity_id), self._clock.now())

    def _transition(
        self,
        entity_id: str,
        build_patch: Callable[[TrackedEntity, datetime], Patch],
    ) -> TrackedEntity:
        try:
            return self._attempt(entity_id, build_patch)
        except ConcurrencyConflict:
            logger.info("Timer %s changed during transition; re-reading", entity_id)
        return self._attempt(entity_id, build_patch)

    def _attempt(
        self,
        entity_id: str,
        build_patch: Callable[[TrackedEntity, datetime], Patch],
    ) -> TrackedEntity:
        entity = self._store.get(entity_id)
        fields = build_patch(entity, self._clock.now())
        if not fields:
            return entity
        updated = self._store.patch(
            entity_id, entity.status, fields, expected_version=entity.version
        )
        logger.debug("Timer %s: %s -> %s", entity_id, entity.status.value, updated.status.value)
        return updated
