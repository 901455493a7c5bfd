"""Data models for channels, jobs and cron entries."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator

DEFAULT_CHANNEL = "default"
DEFAULT_RESULT = "Job executed successfully."


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    ENQUEUED = "enqueued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED)

    def can_advance_to(self, other: "JobState") -> bool:
        """Whether a job may move from this state to ``other``."""
        return other in _TRANSITIONS[self]


_TRANSITIONS = {
    JobState.PENDING: {JobState.ENQUEUED},
    JobState.ENQUEUED: {JobState.RUNNING},
    JobState.RUNNING: {JobState.DONE, JobState.FAILED},
    JobState.DONE: set(),
    JobState.FAILED: set(),
}

ACTIVE_STATES = (JobState.ENQUEUED, JobState.RUNNING)


class IntervalUnit(str, Enum):
    """Units a cron interval can be expressed in."""
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class TargetRef(BaseModel):
    """The operation a job or cron entry points to.

    ``subject_ids`` and ``arguments`` are kept in their encoded form (JSON
    arrays) exactly as given, so that a cron entry hands them over to the
    jobs it spawns verbatim.
    """
    domain: str
    operation: str
    subject_ids: str = "[]"
    arguments: str = "[]"


class Channel(BaseModel):
    """A named lane with a bound on concurrently enqueued or running jobs."""
    name: str = Field(min_length=1)
    capacity: int = Field(default=1, gt=0)


class Job(BaseModel):
    """A unit of deferred work."""
    id: int = 0
    name: str
    target: TargetRef
    owner: str
    channel: str = DEFAULT_CHANNEL
    priority: int = 0
    depends_on: Optional[int] = None
    state: JobState = JobState.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    enqueued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    done_at: Optional[datetime] = None
    result: Optional[str] = None
    error_info: Optional[str] = None
    # Reserved, admission ignores it.
    eta: Optional[datetime] = None
    # Reserved, the dispatcher never retries on its own.
    retry_count: int = 0
    max_retries: int = 0

    @field_validator("created_at", "enqueued_at", "started_at", "done_at", "eta")
    @classmethod
    def timestamps_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return None if value is None else ensure_utc(value)


class CronEntry(BaseModel):
    """Recurring trigger that materializes jobs."""
    id: int = 0
    name: str = Field(min_length=1)
    target: TargetRef
    owner: str
    interval_number: int = Field(default=1, gt=0)
    interval_unit: IntervalUnit = IntervalUnit.MONTHS
    next_call_at: datetime = Field(default_factory=utcnow)
    active: bool = True

    @field_validator("next_call_at")
    @classmethod
    def next_call_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)
