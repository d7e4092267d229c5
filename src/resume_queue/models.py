"""Core task models, constants and the queue error taxonomy."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
import enum
import re
from typing import Any, ClassVar

DOCUMENT_VERSION = "2.0.0"
DOCUMENT_KEYS = ("version", "timestamp", "tasks")

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT = 3600
MAX_TASK_ID_LENGTH = 128
TASK_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

REQUIRED_TASK_KEYS = ("id", "type", "status", "priority", "retry_count", "created_at")


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class TaskType(str, enum.Enum):
    CUSTOM = "custom"
    GITHUB_ISSUE = "github_issue"
    GITHUB_PR = "github_pr"


TYPE_ID_PREFIX = {
    TaskType.CUSTOM: "task",
    TaskType.GITHUB_ISSUE: "issue",
    TaskType.GITHUB_PR: "pr",
}
GITHUB_TYPES = frozenset({TaskType.GITHUB_ISSUE, TaskType.GITHUB_PR})

VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.TIMEOUT: frozenset({TaskStatus.PENDING}),
}
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED})
RETRYABLE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.TIMEOUT})
FINISHED_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT})


def is_valid_transition(current: TaskStatus, new: TaskStatus) -> bool:
    return new in VALID_TRANSITIONS[current]


@dataclass(slots=True)
class Task:
    id: str
    type: TaskType
    status: TaskStatus
    priority: int
    created_at: str
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    timeout: int = DEFAULT_TIMEOUT
    updated_at: str | None = None
    status_times: dict[str, str] = field(default_factory=dict)
    github_number: int | None = None
    title: str | None = None
    description: str | None = None
    command: str | None = None
    labels: list[str] = field(default_factory=list)
    last_error: str | None = None
    last_error_code: int | None = None
    last_error_time: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_github(self) -> bool:
        return self.type in GITHUB_TYPES

    def entered_at(self, status: TaskStatus | None = None) -> str:
        """Time the task last entered ``status`` (default: its current status)."""
        key = (status or self.status).value
        return self.status_times.get(key) or self.created_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        missing = [key for key in REQUIRED_TASK_KEYS if key not in data]
        if missing:
            raise CorruptDocumentError(
                f"Task record {data.get('id', '?')!r} is missing keys {missing}"
            )
        known = {f.name for f in fields(cls)}
        kwargs = {key: value for key, value in data.items() if key in known}
        extra = {key: value for key, value in data.items() if key not in known}
        try:
            kwargs["type"] = TaskType(data["type"])
            kwargs["status"] = TaskStatus(data["status"])
        except ValueError as exc:
            raise CorruptDocumentError(f"Task record {data['id']!r}: {exc}") from exc
        kwargs["status_times"] = dict(kwargs.get("status_times") or {})
        kwargs["labels"] = list(kwargs.get("labels") or [])
        kwargs["metadata"] = {**dict(kwargs.get("metadata") or {}), **extra}
        return cls(**kwargs)


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    DUPLICATE_ID = "duplicate_id"
    QUEUE_FULL = "queue_full"
    INVALID_FIELD = "invalid_field"
    INVALID_TRANSITION = "invalid_transition"
    MAX_RETRIES_REACHED = "max_retries_reached"
    LOCK_TIMEOUT = "lock_timeout"
    LOCK_STALE = "lock_stale"
    CORRUPT_DOCUMENT = "corrupt_document"
    IO_FAILURE = "io_failure"
    EMPTY = "empty"


class QueueError(Exception):
    """Base error for queue operations."""

    kind: ClassVar[ErrorKind]
    retryable: ClassVar[bool] = False


class TaskNotFoundError(QueueError):
    """Raised when a task id is unknown."""

    kind = ErrorKind.NOT_FOUND


class DuplicateTaskError(QueueError):
    """Raised when adding a task whose id is already queued."""

    kind = ErrorKind.DUPLICATE_ID


class QueueFullError(QueueError):
    kind = ErrorKind.QUEUE_FULL


class InvalidFieldError(QueueError):
    """Raised when a task field is outside its allowed range or format."""

    kind = ErrorKind.INVALID_FIELD


class InvalidPriorityError(InvalidFieldError):
    pass


class InvalidTransitionError(QueueError):
    """Raised for status changes the state machine does not allow."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, task_id: str, current: TaskStatus, new: TaskStatus | str) -> None:
        self.task_id = task_id
        self.current = current
        self.new = new
        new_value = new.value if isinstance(new, TaskStatus) else new
        super().__init__(
            f"Invalid state transition for {task_id}: {current.value} -> {new_value}"
        )


class MaxRetriesReachedError(QueueError):
    kind = ErrorKind.MAX_RETRIES_REACHED


class LockTimeoutError(QueueError):
    """Raised when the queue lock could not be taken in time. Safe to retry."""

    kind = ErrorKind.LOCK_TIMEOUT
    retryable = True

    def __init__(self, message: str, holder: Any = None) -> None:
        super().__init__(message)
        self.holder = holder


class LockStaleError(QueueError):
    """Raised instead of reclaiming when a caller opts out of stale-lock reclamation."""

    kind = ErrorKind.LOCK_STALE

    def __init__(self, message: str, holder: Any = None) -> None:
        super().__init__(message)
        self.holder = holder


class CorruptDocumentError(QueueError):
    """Raised when the queue document fails structural validation."""

    kind = ErrorKind.CORRUPT_DOCUMENT


class QueueIOError(QueueError):
    kind = ErrorKind.IO_FAILURE


class QueueEmptyError(QueueError):
    kind = ErrorKind.EMPTY
