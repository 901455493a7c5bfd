"""Error taxonomy for job creation and execution."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    CONCURRENCY_CONFLICT = "concurrency_conflict"


class JobCtlError(Exception):
    """Base class for every error raised by jobctl."""

    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(JobCtlError):
    """Bad target reference, bad encoding or bad administrative request.

    Raised synchronously; nothing has been persisted when it propagates.
    """

    kind = ErrorKind.VALIDATION


class ExecutionError(JobCtlError):
    """The target operation failed while a job was running."""

    kind = ErrorKind.EXECUTION

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}\n\n{self.detail}"
        return self.message


class ConcurrencyConflict(JobCtlError):
    """A row was not in the state a transition expected."""

    kind = ErrorKind.CONCURRENCY_CONFLICT

    def __init__(self, entity: str, entity_id: int, expected: str, actual: str):
        super().__init__(
            f"{entity} {entity_id} is {actual}, expected {expected}"
        )
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


@dataclass
class Outcome:
    """Result of running one job."""

    result: Optional[str] = None
    error: Optional[ExecutionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return None if self.error is None else self.error.kind
