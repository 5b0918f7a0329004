"""Live elapsed-time display driver.

Gives a display surface a locally ticking elapsed value for an owner's open
timers without polling the store every second:

- a per-second tick recomputes elapsed time from the cached snapshots and the
  local clock (it never writes to the store);
- a coarser reconciliation timer replaces the cache from the store, picking
  up transitions made by other devices and correcting drift from missed
  ticks;
- action calls go through the state machine and update the cache as soon as
  the store accepts them. A failed action forces reconciliation of that
  entity instead.

Both timers of a subscription are cancelled synchronously by
``unsubscribe``; no callback fires afterwards.
"""

from __future__ import annotations

import itertools
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from activity_timers.clock import AsyncioScheduler, Clock, PeriodicTimer, Scheduler
from activity_timers.config import DisplaySettings
from activity_timers.errors import IllegalTransition, NotFound, TimerError
from activity_timers.machine import IntervalStateMachine, elapsed_seconds
from activity_timers.models import DEFAULT_CATEGORY, OPEN_STATUSES, Status, TrackedEntity
from activity_timers.store import TimerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LiveElapsed:
    entity: TrackedEntity
    live_elapsed_seconds: int


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a driver action. Exactly one of entity/error is set."""

    ok: bool
    entity: TrackedEntity | None = None
    error: TimerError | None = None

    @property
    def is_noop(self) -> bool:
        """True when the action lost a completion race (already completed)."""
        return isinstance(self.error, IllegalTransition) and self.error.already_completed


UpdateCallback = Callable[[list[LiveElapsed]], None]
ErrorCallback = Callable[[str, TimerError], None]

_subscription_ids = itertools.count(1)


class Subscription:
    """Handle returned by LiveDisplayDriver.subscribe."""

    def __init__(
        self,
        owner_id: str,
        on_update: UpdateCallback,
        on_error: ErrorCallback | None,
        kind: str | None,
    ) -> None:
        self.id = next(_subscription_ids)
        self.owner_id = owner_id
        self.kind = kind
        self.on_update = on_update
        self.on_error = on_error
        self.active = True
        self.cache: dict[str, TrackedEntity] = {}
        self.tick_timer: PeriodicTimer | None = None
        self.reconcile_timer: PeriodicTimer | None = None

    def shows(self, entity: TrackedEntity) -> bool:
        """Whether this subscription displays the given snapshot."""
        return (
            entity.owner_id == self.owner_id
            and entity.status in OPEN_STATUSES
            and (self.kind is None or entity.kind == self.kind)
        )

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, owner_id={self.owner_id!r}, active={self.active})"


class LiveDisplayDriver:
    """Cancellable live display of an owner's open timers."""

    def __init__(
        self,
        machine: IntervalStateMachine,
        store: TimerStore,
        *,
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        settings: DisplaySettings | None = None,
    ) -> None:
        self._machine = machine
        self._store = store
        self._clock = clock or machine.clock
        self._scheduler = scheduler or AsyncioScheduler()
        self._settings = settings or DisplaySettings()
        self._subscriptions: dict[int, Subscription] = {}

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def subscribe(
        self,
        owner_id: str,
        on_update: UpdateCallback,
        on_error: ErrorCallback | None = None,
        *,
        kind: str | None = None,
    ) -> Subscription:
        """Start displaying owner_id's open timers.

        on_update is called immediately with the current values, then on
        every tick and reconciliation.
        """
        sub = Subscription(owner_id, on_update, on_error, kind)
        sub.tick_timer = PeriodicTimer(
            self._scheduler,
            self._settings.tick_interval.total_seconds(),
            lambda: self._emit(sub),
        )
        sub.reconcile_timer = PeriodicTimer(
            self._scheduler,
            self._settings.reconcile_interval.total_seconds(),
            lambda: self._reconcile(sub),
        )
        self._subscriptions[sub.id] = sub
        self._reconcile(sub)
        sub.reconcile_timer.start()
        logger.debug("Subscribed %r", sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Cancel both timers of a subscription. Safe to call twice."""
        sub.active = False
        if sub.tick_timer is not None:
            sub.tick_timer.cancel()
        if sub.reconcile_timer is not None:
            sub.reconcile_timer.cancel()
        self._subscriptions.pop(sub.id, None)
        logger.debug("Unsubscribed %r", sub)

    def close(self) -> None:
        for sub in self.subscriptions:
            self.unsubscribe(sub)

    def refresh(self, sub: Subscription | None = None) -> None:
        """Reconcile one subscription (or all) out of band."""
        targets = [sub] if sub is not None else self.subscriptions
        for target in targets:
            self._reconcile(target)

    def start(self, owner_id: str, category: str | None = None, **kwargs: Any) -> ActionResult:
        return self._act(
            None, lambda: self._machine.start(owner_id, category or DEFAULT_CATEGORY, **kwargs)
        )

    def pause(self, entity_id: str, reason: str = "") -> ActionResult:
        return self._act(entity_id, lambda: self._machine.pause(entity_id, reason))

    def resume(self, entity_id: str) -> ActionResult:
        return self._act(entity_id, lambda: self._machine.resume(entity_id))

    def complete(self, entity_id: str, details: dict[str, Any] | None = None) -> ActionResult:
        return self._act(entity_id, lambda: self._machine.complete(entity_id, details))

    def _act(
        self,
        entity_id: str | None,
        action: Callable[[], TrackedEntity],
    ) -> ActionResult:
        try:
            entity = action()
        except TimerError as e:
            logger.info("Timer action on %s failed: %s", entity_id, e)
            if entity_id is not None:
                self._reconcile_entity(entity_id, error=e)
            return ActionResult(ok=False, error=e)

        self._apply_snapshot(entity.id, entity)
        return ActionResult(ok=True, entity=entity)

    def _apply_snapshot(
        self,
        entity_id: str,
        entity: TrackedEntity | None,
        *,
        error: TimerError | None = None,
    ) -> None:
        """Put a fresh snapshot (or its absence) into every affected cache."""
        for sub in self.subscriptions:
            was_shown = entity_id in sub.cache
            if entity is not None and sub.shows(entity):
                sub.cache[entity_id] = entity
            elif was_shown:
                del sub.cache[entity_id]
            else:
                continue

            self._sync_tick(sub)
            self._emit(sub)
            if error is not None and sub.on_error is not None:
                sub.on_error(entity_id, error)

    def _reconcile_entity(self, entity_id: str, *, error: TimerError) -> None:
        try:
            entity: TrackedEntity | None = self._store.get(entity_id)
        except NotFound:
            entity = None
        self._apply_snapshot(entity_id, entity, error=error)

    def _reconcile(self, sub: Subscription) -> None:
        if not sub.active:
            return
        try:
            entities = self._store.query_by_owner(sub.owner_id, OPEN_STATUSES, kind=sub.kind)
        except sqlite3.Error as e:
            # Keep ticking from the last good snapshot; the next reconcile retries
            logger.warning("Reconciliation for %s failed: %s", sub.owner_id, e)
            return
        sub.cache = {entity.id: entity for entity in entities}
        self._sync_tick(sub)
        self._emit(sub)

    def _sync_tick(self, sub: Subscription) -> None:
        if sub.tick_timer is None:
            return
        if sub.active and any(e.status == Status.ACTIVE for e in sub.cache.values()):
            sub.tick_timer.start()
        else:
            sub.tick_timer.cancel()

    def _emit(self, sub: Subscription) -> None:
        if not sub.active:
            return
        now = self._clock.now()
        sub.on_update([
            LiveElapsed(entity=entity, live_elapsed_seconds=elapsed_seconds(entity, now))
            for entity in sub.cache.values()
        ])
