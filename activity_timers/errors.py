"""Exceptions raised by the timer engine."""

from __future__ import annotations


class TimerError(Exception):
    """Base exception for timer errors."""

    pass


class IllegalTransition(TimerError):
    """Raised when a transition is not valid from the entity's current status."""

    def __init__(
        self,
        message: str,
        *,
        entity_id: str | None = None,
        status: str | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.entity_id = entity_id
        self.status = status
        self.action = action

    @property
    def already_completed(self) -> bool:
        """True for the completion race: another caller stopped the timer first.

        Callers usually treat this as a harmless no-op.
        """
        return self.action == "complete" and self.status == "completed"


class InvalidState(TimerError):
    """Raised when start is invoked for an entity that already exists."""

    pass


class ConcurrencyConflict(TimerError):
    """Raised when a conditional write finds the record changed since the read."""

    def __init__(self, entity_id: str, expected_status: str) -> None:
        super().__init__(f"Timer {entity_id} changed since it was read as {expected_status}")
        self.entity_id = entity_id
        self.expected_status = expected_status


class NotFound(TimerError):
    """Raised when an entity id does not exist in the store."""

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"Timer not found: {entity_id}")
        self.entity_id = entity_id
