"""Tests for the interval state machine."""

import logging
import math
from datetime import datetime, timedelta, timezone

import pytest

from activity_timers.clock import ManualClock
from activity_timers.errors import ConcurrencyConflict, IllegalTransition, InvalidState, NotFound
from activity_timers.machine import (
    IntervalStateMachine,
    complete_patch,
    elapsed_seconds,
    pause_patch,
    resume_patch,
)
from activity_timers.models import Status, TrackedEntity
from activity_timers.store import TimerStore

T0 = datetime(2025, 1, 25, 10, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Instant `seconds` after T0."""
    return T0 + timedelta(seconds=seconds)


def make_machine() -> tuple[IntervalStateMachine, TimerStore, ManualClock]:
    """Helper to create a machine on an in-memory store with a virtual clock at T0."""
    clock = ManualClock(T0)
    store = TimerStore.open_in_memory(clock=clock)
    return IntervalStateMachine(store, clock), store, clock


def apply(entity: TrackedEntity, patch: dict) -> TrackedEntity:
    """Apply a pure transition patch to a snapshot, as the store would."""
    return TrackedEntity.model_validate({**entity.model_dump(), **patch})


def fresh_entity(start: datetime = T0) -> TrackedEntity:
    return TrackedEntity(id="t1", owner_id="op-1", status=Status.ACTIVE, start_time=start)


class RacingStore(TimerStore):
    """Store that runs another client's write right after the next read."""

    interleave = None

    def get(self, entity_id: str) -> TrackedEntity:
        snapshot = super().get(entity_id)
        hook, self.interleave = self.interleave, None
        if hook is not None:
            hook()
        return snapshot


class TestStart:
    """Tests for timer creation."""

    def test_start_sets_initial_fields(self):
        machine, store, clock = make_machine()
        entity = machine.start("op-1", "survey", name="North field", project_id="p-1")

        assert entity.status == Status.ACTIVE
        assert entity.start_time == T0
        assert entity.paused_at is None
        assert entity.total_paused_seconds == 0
        assert entity.end_time is None
        assert entity.total_seconds == 0
        assert entity.category == "survey"
        assert entity.name == "North field"
        assert entity.project_id == "p-1"
        assert store.get(entity.id) == entity

    def test_start_defaults(self):
        machine, _, _ = make_machine()
        entity = machine.start("op-1")
        assert entity.category == "other"
        assert entity.kind == "activity"
        assert entity.name == "Untitled Activity"
        assert entity.include_in_report is True
        assert entity.report_section == "fieldwork"

    def test_start_testing_session_kind(self):
        machine, _, _ = make_machine()
        entity = machine.start("op-1", "inspection", kind="testing_session", metadata={"declaration": "d-9"})
        assert entity.kind == "testing_session"
        assert entity.metadata == {"declaration": "d-9"}

    def test_start_existing_id_is_invalid_state(self):
        machine, _, _ = make_machine()
        machine.start("op-1", entity_id="fixed-id")
        with pytest.raises(InvalidState):
            machine.start("op-1", entity_id="fixed-id")

    def test_start_requires_owner(self):
        machine, _, _ = make_machine()
        with pytest.raises(ValueError, match="owner_id"):
            machine.start("")

    def test_start_rejects_unknown_kind(self):
        machine, _, _ = make_machine()
        with pytest.raises(ValueError, match="kind"):
            machine.start("op-1", kind="expense")


class TestTransitions:
    """Tests for pause/resume/complete against the store."""

    def test_pause_resume_complete_scenario(self):
        """Start 0, pause 100, resume 130, complete 200 -> 30s paused, 170s total."""
        machine, _, clock = make_machine()
        entity = machine.start("op-1")

        clock.advance(100)
        paused = machine.pause(entity.id)
        assert paused.status == Status.PAUSED
        assert paused.paused_at == at(100)

        clock.advance(30)
        resumed = machine.resume(entity.id)
        assert resumed.status == Status.ACTIVE
        assert resumed.paused_at is None
        assert resumed.total_paused_seconds == 30

        clock.advance(70)
        done = machine.complete(entity.id)
        assert done.status == Status.COMPLETED
        assert done.total_paused_seconds == 30
        assert done.total_seconds == 170
        assert done.end_time == at(200)
        assert done.paused_at is None

    def test_complete_immediately(self):
        """Complete at the start instant gives 0 seconds, no error."""
        machine, _, _ = make_machine()
        entity = machine.start("op-1")
        done = machine.complete(entity.id)
        assert done.total_seconds == 0

    def test_pause_twice_is_illegal(self):
        machine, _, clock = make_machine()
        entity = machine.start("op-1")
        clock.advance(50)
        machine.pause(entity.id)

        with pytest.raises(IllegalTransition, match="pause requires active") as exc_info:
            machine.pause(entity.id)
        assert exc_info.value.already_completed is False

    def test_resume_active_is_illegal(self):
        machine, _, _ = make_machine()
        entity = machine.start("op-1")
        with pytest.raises(IllegalTransition, match="resume requires paused"):
            machine.resume(entity.id)

    def test_complete_while_paused_folds_pause(self):
        machine, _, clock = make_machine()
        entity = machine.start("op-1")
        clock.advance(50)
        machine.pause(entity.id, reason="weather")
        clock.advance(30)

        done = machine.complete(entity.id)
        assert done.total_paused_seconds == 30
        assert done.total_seconds == 50
        assert len(done.pause_history) == 1
        assert done.pause_history[0].paused_at == at(50)
        assert done.pause_history[0].resumed_at == at(80)
        assert done.pause_history[0].reason == "weather"

    def test_complete_twice_is_idempotent(self):
        """Second complete raises already-completed and changes nothing."""
        machine, store, clock = make_machine()
        entity = machine.start("op-1")
        clock.advance(42)
        first = machine.complete(entity.id)

        clock.advance(10)
        with pytest.raises(IllegalTransition, match="already completed") as exc_info:
            machine.complete(entity.id)
        assert exc_info.value.already_completed is True

        after = store.get(entity.id)
        assert after == first
        assert after.total_seconds == 42

    def test_completed_is_terminal(self):
        machine, _, _ = make_machine()
        entity = machine.start("op-1")
        machine.complete(entity.id)
        with pytest.raises(IllegalTransition):
            machine.pause(entity.id)
        with pytest.raises(IllegalTransition):
            machine.resume(entity.id)
        with pytest.raises(IllegalTransition):
            machine.update_details(entity.id, {"notes": "late edit"})

    def test_pause_history_records_each_cycle(self):
        machine, store, clock = make_machine()
        entity = machine.start("op-1")
        for _ in range(3):
            clock.advance(10)
            machine.pause(entity.id)
            clock.advance(5)
            machine.resume(entity.id)

        current = store.get(entity.id)
        assert current.total_paused_seconds == 15
        assert [p.resumed_at is not None for p in current.pause_history] == [True, True, True]

    def test_missing_entity_is_not_found(self):
        machine, _, _ = make_machine()
        with pytest.raises(NotFound):
            machine.pause("does-not-exist")

    def test_complete_writes_final_details(self):
        machine, _, _ = make_machine()
        entity = machine.start("op-1")
        done = machine.complete(
            entity.id,
            {"notes": "Surveyed 3 plots", "report_section": "appendix", "bogus": "ignored"},
        )
        assert done.notes == "Surveyed 3 plots"
        assert done.report_section == "appendix"

    def test_update_details_only_whitelisted_fields(self):
        machine, _, _ = make_machine()
        entity = machine.start("op-1")
        updated = machine.update_details(
            entity.id,
            {"name": "Renamed", "category": "mapping", "status": "completed", "total_seconds": 999},
        )
        assert updated.name == "Renamed"
        assert updated.category == "mapping"
        assert updated.status == Status.ACTIVE
        assert updated.total_seconds == 0

    def test_elapsed_query_through_machine(self):
        machine, _, clock = make_machine()
        entity = machine.start("op-1")
        clock.advance(12.7)
        assert machine.elapsed(entity.id) == 12


class TestConcurrency:
    """Conditional writes and the single retry."""

    def make_racing(self):
        clock = ManualClock(T0)
        store = RacingStore.open_in_memory(clock=clock)
        return IntervalStateMachine(store, clock), IntervalStateMachine(store, clock), store, clock

    def test_concurrent_pause_second_gets_illegal_transition(self):
        """Both read active; the loser retries, sees paused, and gets IllegalTransition."""
        machine, other, store, clock = self.make_racing()
        entity = machine.start("op-1")
        clock.advance(20)

        store.interleave = lambda: other.pause(entity.id)
        with pytest.raises(IllegalTransition, match="pause requires active"):
            machine.pause(entity.id)

        current = store.get(entity.id)
        assert current.status == Status.PAUSED
        assert current.paused_at == at(20)
        assert len(current.pause_history) == 1

    def test_conflict_retry_succeeds_when_still_legal(self):
        """Complete races a pause; the retry completes from the paused snapshot."""
        machine, other, store, clock = self.make_racing()
        entity = machine.start("op-1")
        clock.advance(60)

        store.interleave = lambda: other.pause(entity.id)
        done = machine.complete(entity.id)

        assert done.status == Status.COMPLETED
        assert done.total_seconds == 60
        assert done.total_paused_seconds == 0

    def test_pause_and_resume_elsewhere_between_read_and_write(self):
        """Another client pauses and resumes while complete is in flight.

        The status is active again at write time, but the stale snapshot must
        not overwrite the recorded pause.
        """
        machine, _, store, clock = self.make_racing()
        entity = machine.start("op-1")
        clock.advance(200)

        def pause_and_resume():
            IntervalStateMachine(store, ManualClock(at(100))).pause(entity.id, "radio check")
            IntervalStateMachine(store, ManualClock(at(130))).resume(entity.id)

        store.interleave = pause_and_resume
        done = machine.complete(entity.id)

        assert done.status == Status.COMPLETED
        assert done.total_paused_seconds == 30
        assert done.total_seconds == 170
        assert len(done.pause_history) == 1
        assert done.pause_history[0].reason == "radio check"

    def test_second_conflict_is_raised(self):
        machine, other, store, clock = self.make_racing()
        entity = machine.start("op-1")
        clock.advance(10)

        def first_race():
            other.pause(entity.id)
            store.interleave = lambda: other.resume(entity.id)

        store.interleave = first_race
        with pytest.raises(ConcurrencyConflict):
            machine.complete(entity.id)
        assert store.get(entity.id).status == Status.ACTIVE

    def test_conflict_when_status_changed_since_read(self):
        machine, store, clock = make_machine()
        entity = machine.start("op-1")
        snapshot = store.get(entity.id)
        machine.pause(entity.id)

        with pytest.raises(ConcurrencyConflict):
            store.patch(entity.id, snapshot.status, pause_patch(snapshot, clock.now()))


class TestElapsedProperties:
    """Continuity, conservation, monotonicity and clamping of the arithmetic."""

    @pytest.mark.parametrize("pause_at,resume_at", [(100, 130), (100.7, 130.2), (0.4, 0.9), (59.999, 3600.001)])
    def test_continuity_at_transitions(self, pause_at, resume_at):
        entity = fresh_entity()

        before_pause = elapsed_seconds(entity, at(pause_at))
        entity = apply(entity, pause_patch(entity, at(pause_at)))
        after_pause = elapsed_seconds(entity, at(pause_at))
        assert abs(after_pause - before_pause) <= 1

        before_resume = elapsed_seconds(entity, at(resume_at))
        entity = apply(entity, resume_patch(entity, at(resume_at)))
        after_resume = elapsed_seconds(entity, at(resume_at))
        assert abs(after_resume - before_resume) <= 1

    def test_paused_elapsed_is_frozen(self):
        entity = fresh_entity()
        entity = apply(entity, pause_patch(entity, at(40)))
        assert elapsed_seconds(entity, at(41)) == 40
        assert elapsed_seconds(entity, at(4000)) == 40

    def test_completed_elapsed_is_frozen_total(self):
        entity = fresh_entity()
        entity = apply(entity, complete_patch(entity, at(90)))
        assert elapsed_seconds(entity, at(10_000)) == 90

    @pytest.mark.parametrize(
        "cycles,end",
        [
            ([], 200.5),
            ([(10.3, 20.9)], 100.1),
            ([(100, 130)], 200),
            ([(1.5, 2.7), (3.2, 8.9), (50.05, 70.95)], 123.456),
        ],
    )
    def test_conservation(self, cycles, end):
        """total_seconds + total_paused_seconds == floor(end - start)."""
        entity = fresh_entity()
        for pause_at, resume_at in cycles:
            entity = apply(entity, pause_patch(entity, at(pause_at)))
            entity = apply(entity, resume_patch(entity, at(resume_at)))
        entity = apply(entity, complete_patch(entity, at(end)))

        span = (entity.end_time - entity.start_time).total_seconds()
        assert entity.total_seconds + entity.total_paused_seconds == math.floor(span)

    def test_monotonic_while_active_and_paused_total(self):
        entity = fresh_entity()
        previous_elapsed = -1
        previous_paused = 0
        t = 0.0
        for step in range(20):
            t += 7.3
            if step % 4 == 1:
                entity = apply(entity, pause_patch(entity, at(t)))
            elif step % 4 == 3:
                entity = apply(entity, resume_patch(entity, at(t)))
            assert entity.total_paused_seconds >= previous_paused
            previous_paused = entity.total_paused_seconds
            if entity.status == Status.ACTIVE:
                current = elapsed_seconds(entity, at(t))
                assert current >= previous_elapsed
                previous_elapsed = current

    def test_negative_elapsed_clamped_and_logged(self, caplog):
        entity = fresh_entity(start=at(100))
        with caplog.at_level(logging.WARNING, logger="activity_timers.machine"):
            assert elapsed_seconds(entity, at(40)) == 0
        assert "Clock skew clamped" in caplog.text

    def test_backwards_resume_adds_no_pause(self, caplog):
        machine, store, clock = make_machine()
        entity = machine.start("op-1")
        clock.advance(100)
        machine.pause(entity.id)
        clock.set(at(90))

        with caplog.at_level(logging.WARNING, logger="activity_timers.machine"):
            resumed = machine.resume(entity.id)
        assert resumed.total_paused_seconds == 0
        assert "pause duration" in caplog.text

    def test_complete_before_start_is_zero(self):
        entity = fresh_entity(start=at(500))
        done = apply(entity, complete_patch(entity, at(10)))
        assert done.total_seconds == 0
        assert done.total_paused_seconds == 0
