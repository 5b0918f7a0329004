"""Timer records and their field constants."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Status(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


# Statuses a timer can still transition out of
OPEN_STATUSES = frozenset({Status.ACTIVE, Status.PAUSED})

KINDS = ("activity", "testing_session")

ACTIVITY_CATEGORIES = {
    "survey": "Survey",
    "data_collection": "Data Collection",
    "inspection": "Inspection",
    "photography": "Photography",
    "mapping": "Mapping",
    "flight_ops": "Flight Operations",
    "ground_work": "Ground Work",
    "equipment_setup": "Equipment Setup",
    "client_meeting": "Client Meeting",
    "travel": "Travel",
    "other": "Other",
}

DEFAULT_CATEGORY = "other"
DEFAULT_REPORT_SECTION = "fieldwork"

# Fields that may be edited on an open timer (and set once more at completion)
DETAIL_FIELDS = ("name", "category", "notes", "include_in_report", "report_section")


class PauseInterval(BaseModel):
    """One pause of a timer. ``resumed_at`` is None while the pause is open."""

    paused_at: datetime
    resumed_at: datetime | None = None
    reason: str = ""


class TrackedEntity(BaseModel):
    """A timer record as stored.

    Instances are read-only snapshots: transitions produce patches that are
    written back to the store, never in-place mutation.
    """

    id: str
    kind: str = "activity"
    owner_id: str
    status: Status
    start_time: datetime
    paused_at: datetime | None = None
    total_paused_seconds: int = Field(default=0, ge=0)
    end_time: datetime | None = None
    total_seconds: int = Field(default=0, ge=0)
    category: str = DEFAULT_CATEGORY
    name: str = "Untitled Activity"
    project_id: str | None = None
    notes: str = ""
    include_in_report: bool = True
    report_section: str = DEFAULT_REPORT_SECTION
    pause_history: list[PauseInterval] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = Field(default=0, ge=0)

    model_config = {"frozen": True}

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES
