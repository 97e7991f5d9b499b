"""In-memory state of one sync run (backfill or recurring pass).

State machine::

    idle → fetching-subjects → syncing (unit i of N) → complete | error

A run is never persisted; a restarted process starts a fresh one and relies on
the store (completed days are skipped) to resume.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SyncStage(str, Enum):
    IDLE = "idle"
    FETCHING_SUBJECTS = "fetching-subjects"
    SYNCING = "syncing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class UnitError:
    """A failed unit (a backfill day or a recurring step)."""

    unit: str
    message: str


@dataclass
class SyncRun:
    """Progress of one run.

    Attributes:
        kind:            "backfill" or "recurring".
        stage:           Current SyncStage.
        total_units:     Units planned for this run.
        completed_units: Units processed so far (failed units count as processed).
        current_unit:    Label of the unit in progress, None between units.
        errors:          One entry per failed unit.
        start_time:      UTC start timestamp.
        finished_at:     UTC end timestamp, None while running.
    """

    kind: str
    stage: SyncStage = SyncStage.IDLE
    total_units: int = 0
    completed_units: int = 0
    current_unit: str | None = None
    errors: list[UnitError] = field(default_factory=list)
    start_time: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_finished(self) -> bool:
        return self.stage in (SyncStage.COMPLETE, SyncStage.ERROR)

    def record_error(self, unit: str, message: str) -> None:
        self.errors.append(UnitError(unit=unit, message=message))

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "stage": self.stage.value,
            "total_units": self.total_units,
            "completed_units": self.completed_units,
            "current_unit": self.current_unit,
            "errors": [{"unit": e.unit, "message": e.message} for e in self.errors],
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
