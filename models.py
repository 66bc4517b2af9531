# models.py
from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, FrozenSet, NamedTuple, Optional

from pydantic import BaseModel

from errors import InvalidTransitionError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    pending = "Pending"
    running = "Running"
    success = "Success"
    failed = "Failed"

    @property
    def emoji(self) -> str:
        return _STATUS_EMOJI[self]

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.success, JobStatus.failed)


_STATUS_EMOJI = {
    JobStatus.pending: "⏳",
    JobStatus.running: "🏗️",
    JobStatus.success: "✅",
    JobStatus.failed: "❌",
}

# Pending -> Running is the Runner's claim; Failed -> Pending is an external reset.
# Deletion (cancel) is not a status change and is not listed here.
TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.pending: frozenset({JobStatus.running}),
    JobStatus.running: frozenset({JobStatus.success, JobStatus.failed}),
    JobStatus.success: frozenset(),
    JobStatus.failed: frozenset({JobStatus.pending}),
}


def check_transition(old: JobStatus, new: JobStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``old -> new`` is allowed."""
    if new not in TRANSITIONS[old]:
        raise InvalidTransitionError(f"Cannot move job from {old.value} to {new.value}")


class Job(BaseModel):
    """Persistent representation of a build job."""

    id: int
    name: str
    command: str
    output: Optional[str] = None
    status: JobStatus = JobStatus.pending
    created_at: datetime
    updated_at: datetime

    def month(self) -> str:
        """Month bucket (``YYYY-MM``) of the job's creation time, UTC."""
        return self.created_at.astimezone(timezone.utc).strftime("%Y-%m")

    def log_path(self, log_dir) -> Path:
        return Path(log_dir) / self.month() / f"{self.id}.log"

    def tokens(self) -> list:
        """Recipe name followed by its arguments."""
        return self.command.split()

    def created_on(self, day: date) -> bool:
        return self.created_at.astimezone(timezone.utc).date() == day


class StatusEvent(NamedTuple):
    id: int
    status: JobStatus
