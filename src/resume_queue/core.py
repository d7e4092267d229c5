"""In-memory task collection and lifecycle state machine.

``TaskQueue`` is storage-agnostic: it validates and applies changes to the
tasks it owns and leaves persistence to the caller (see ``service``).
Every rejected operation raises before touching the collection.
"""

from __future__ import annotations

import copy
import datetime as dt
import logging
from typing import Any, Callable, Iterable, Iterator, Mapping

from .models import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    DEFAULT_TIMEOUT,
    FINISHED_STATUSES,
    GITHUB_TYPES,
    MAX_PRIORITY,
    MAX_TASK_ID_LENGTH,
    MIN_PRIORITY,
    RETRYABLE_STATUSES,
    TASK_ID_RE,
    TERMINAL_STATUSES,
    TYPE_ID_PREFIX,
    DuplicateTaskError,
    InvalidFieldError,
    InvalidPriorityError,
    InvalidTransitionError,
    MaxRetriesReachedError,
    QueueEmptyError,
    QueueFullError,
    Task,
    TaskNotFoundError,
    TaskStatus,
    TaskType,
    is_valid_transition,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]


def _now() -> dt.datetime:
    return dt.datetime.now().astimezone()


def parse_timestamp(value: str) -> dt.datetime:
    parsed = dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def validate_task_id(task_id: Any) -> str:
    if not isinstance(task_id, str) or not task_id:
        raise InvalidFieldError("Task ID cannot be empty")
    if len(task_id) > MAX_TASK_ID_LENGTH:
        raise InvalidFieldError(f"Task ID too long (max {MAX_TASK_ID_LENGTH} chars): {task_id}")
    if not TASK_ID_RE.fullmatch(task_id):
        raise InvalidFieldError(f"Task ID contains invalid characters: {task_id}")
    return task_id


def validate_priority(priority: Any) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise InvalidPriorityError(
            f"Priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}: {priority!r}"
        )
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise InvalidPriorityError(
            f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}: {priority}"
        )
    return priority


def validate_status(status: Any) -> TaskStatus:
    try:
        return TaskStatus(status)
    except ValueError as exc:
        raise InvalidFieldError(f"Unknown status: {status}") from exc


def validate_task_type(task_type: Any) -> TaskType:
    try:
        return TaskType(task_type)
    except ValueError as exc:
        raise InvalidFieldError(f"Invalid task type: {task_type}") from exc


def _validate_positive_int(name: str, value: Any, *, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidFieldError(f"{name} must be an integer: {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise InvalidFieldError(f"{name} must be a {qualifier} number: {value}")
    return value


def _normalize_github_number(value: Any) -> int:
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidFieldError(f"GitHub number must be a positive integer: {value!r}")
    return value


def _normalize_labels(labels: Iterable[str] | str | None) -> list[str]:
    if not labels:
        return []
    if isinstance(labels, str):
        labels = labels.split(",")
    return sorted({label.strip() for label in labels if label.strip()})


class TaskQueue:
    """Authoritative task collection for the current process."""

    def __init__(
        self,
        *,
        max_size: int = 0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        default_timeout: int = DEFAULT_TIMEOUT,
        clock: Clock | None = None,
    ) -> None:
        self.max_size = max_size
        self.max_retries = max_retries
        self.default_timeout = default_timeout
        self._clock = clock or _now
        self._tasks: dict[str, Task] = {}

    def _stamp(self) -> str:
        return self._clock().isoformat()

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(self.list())

    def ids(self) -> list[str]:
        return list(self._tasks)

    def exists(self, task_id: str) -> bool:
        return task_id in self._tasks

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def get(self, task_id: str) -> Task:
        return copy.deepcopy(self._require(task_id))

    def generate_task_id(self, task_type: TaskType = TaskType.CUSTOM) -> str:
        prefix = TYPE_ID_PREFIX[task_type]
        timestamp = int(self._clock().timestamp())
        seq = 1
        while f"{prefix}-{timestamp}-{seq:04d}" in self._tasks:
            seq += 1
        return f"{prefix}-{timestamp}-{seq:04d}"

    def add(
        self,
        task_type: TaskType | str,
        priority: int = DEFAULT_PRIORITY,
        task_id: str | None = None,
        *,
        title: str | None = None,
        description: str | None = None,
        command: str | None = None,
        github_number: int | str | None = None,
        labels: Iterable[str] | str | None = None,
        timeout: int | None = None,
        max_retries: int | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        kind = validate_task_type(task_type)
        validate_priority(priority)
        timeout = _validate_positive_int("Timeout", self.default_timeout if timeout is None else timeout)
        max_retries = _validate_positive_int(
            "max_retries",
            self.max_retries if max_retries is None else max_retries,
            allow_zero=True,
        )
        if kind in GITHUB_TYPES:
            if github_number is None:
                raise InvalidFieldError(f"{kind.value} task requires a GitHub number")
            github_number = _normalize_github_number(github_number)
        elif github_number is not None:
            github_number = _normalize_github_number(github_number)

        if task_id is None:
            task_id = self.generate_task_id(kind)
        else:
            validate_task_id(task_id)
        if task_id in self._tasks:
            raise DuplicateTaskError(f"Task already exists in queue: {task_id}")
        if self.max_size > 0 and len(self._tasks) >= self.max_size:
            raise QueueFullError(f"Queue is full (max size: {self.max_size})")

        now = self._stamp()
        task = Task(
            id=task_id,
            type=kind,
            status=TaskStatus.PENDING,
            priority=priority,
            created_at=now,
            max_retries=max_retries,
            timeout=timeout,
            updated_at=now,
            status_times={TaskStatus.PENDING.value: now},
            github_number=github_number,
            title=title,
            description=description,
            command=command,
            labels=_normalize_labels(labels),
            metadata=dict(metadata or {}),
        )
        self._tasks[task_id] = task
        logger.info("Added task %s (%s, priority=%d)", task_id, kind.value, priority)
        return task_id

    def add_github_issue(
        self,
        number: int | str,
        priority: int = DEFAULT_PRIORITY,
        title: str | None = None,
        labels: Iterable[str] | str | None = None,
    ) -> str:
        number = _normalize_github_number(number)
        return self.add(
            TaskType.GITHUB_ISSUE,
            priority,
            f"issue-{number}",
            title=title or f"GitHub Issue #{number}",
            command=f"/dev {number}",
            github_number=number,
            labels=labels,
        )

    def add_github_pr(
        self,
        number: int | str,
        priority: int = DEFAULT_PRIORITY,
        title: str | None = None,
    ) -> str:
        number = _normalize_github_number(number)
        return self.add(
            TaskType.GITHUB_PR,
            priority,
            f"pr-{number}",
            title=title or f"GitHub PR #{number}",
            command=f"/dev {number}",
            github_number=number,
        )

    def validate_github_task(self, task_id: str) -> None:
        task = self._require(task_id)
        if not task.is_github:
            raise InvalidFieldError(f"Task is not a GitHub task: {task_id} (type: {task.type.value})")
        if task.github_number is None:
            raise InvalidFieldError(f"GitHub task missing issue/PR number: {task_id}")
        _normalize_github_number(task.github_number)

    def remove(self, task_id: str) -> None:
        self._require(task_id)
        del self._tasks[task_id]
        logger.info("Removed task %s", task_id)

    def clear(self) -> int:
        count = len(self._tasks)
        self._tasks.clear()
        logger.info("Queue cleared: removed %d tasks", count)
        return count

    def _sort_key(self, task: Task) -> tuple[int, dt.datetime]:
        return task.priority, parse_timestamp(task.created_at)

    def get_next(self, status: TaskStatus | str = TaskStatus.PENDING) -> str:
        wanted = validate_status(status)
        candidates = [task for task in self._tasks.values() if task.status == wanted]
        if not candidates:
            raise QueueEmptyError(f"No tasks found with status: {wanted.value}")
        # min() keeps the first of equal keys, so insertion order breaks exact ties
        best = min(candidates, key=self._sort_key)
        logger.debug("Next %s task: %s (priority %d)", wanted.value, best.id, best.priority)
        return best.id

    def list(self, status: TaskStatus | str | None = None) -> list[Task]:
        tasks = list(self._tasks.values())
        if status is not None and status != "all":
            wanted = validate_status(status)
            tasks = [task for task in tasks if task.status == wanted]
        return [copy.deepcopy(task) for task in sorted(tasks, key=self._sort_key)]

    def _transition(self, task: Task, new_status: TaskStatus) -> None:
        now = self._stamp()
        logger.info("Task %s state change: %s -> %s", task.id, task.status.value, new_status.value)
        task.status = new_status
        task.status_times[new_status.value] = now
        task.updated_at = now

    def update_status(
        self,
        task_id: str,
        new_status: TaskStatus | str,
        details: str | None = None,
    ) -> None:
        task = self._require(task_id)
        target = validate_status(new_status)
        if not is_valid_transition(task.status, target):
            raise InvalidTransitionError(task_id, task.status, target)
        if details:
            logger.debug("State change details for %s: %s", task_id, details)
        self._transition(task, target)

    def update_priority(self, task_id: str, priority: int) -> bool:
        """Set the priority; returns False when it already had that value."""
        task = self._require(task_id)
        validate_priority(priority)
        if task.priority == priority:
            return False
        logger.info("Task %s priority change: %d -> %d", task_id, task.priority, priority)
        task.priority = priority
        task.updated_at = self._stamp()
        return True

    def increment_retry(self, task_id: str) -> int:
        task = self._require(task_id)
        if task.retry_count >= task.max_retries:
            logger.warning("Task %s has reached maximum retry count (%d)", task_id, task.max_retries)
            raise MaxRetriesReachedError(
                f"Task {task_id} has reached maximum retry count ({task.retry_count}/{task.max_retries})"
            )
        task.retry_count += 1
        task.updated_at = self._stamp()
        logger.info("Task %s retry count incremented: %d/%d", task_id, task.retry_count, task.max_retries)
        return task.retry_count

    def record_error(self, task_id: str, message: str, code: int = 1) -> None:
        task = self._require(task_id)
        if task.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(task_id, task.status, TaskStatus.FAILED)
        now = self._stamp()
        task.last_error = message
        task.last_error_code = code
        task.last_error_time = now
        logger.error(
            "Task %s error (retry %d): %s (code: %d)", task_id, task.retry_count, message, code
        )
        if task.status != TaskStatus.FAILED:
            self._transition(task, TaskStatus.FAILED)
        else:
            task.updated_at = now

    def check_retry_eligible(self, task_id: str) -> bool:
        task = self._require(task_id)
        if task.status not in RETRYABLE_STATUSES:
            logger.debug("Task %s is not eligible for retry (status: %s)", task_id, task.status.value)
            return False
        if task.retry_count >= task.max_retries:
            logger.debug(
                "Task %s has exceeded retry limit (%d >= %d)", task_id, task.retry_count, task.max_retries
            )
            return False
        return True

    def retry(self, task_id: str) -> int:
        """Send a failed or timed-out task back to pending, consuming one retry."""
        task = self._require(task_id)
        if task.status not in RETRYABLE_STATUSES:
            raise InvalidTransitionError(task_id, task.status, TaskStatus.PENDING)
        count = self.increment_retry(task_id)
        self._transition(task, TaskStatus.PENDING)
        return count

    def duration(self, task_id: str) -> float:
        task = self._require(task_id)
        start = parse_timestamp(task.created_at)
        if task.status in FINISHED_STATUSES:
            end = parse_timestamp(task.entered_at())
        else:
            end = self._clock()
        return (end - start).total_seconds()

    def stats(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in TaskStatus}
        completed_seconds = 0.0
        for task in self._tasks.values():
            counts[task.status.value] += 1
            if task.status == TaskStatus.COMPLETED:
                completed_seconds += self.duration(task.id)
        total = len(self._tasks)
        completed = counts[TaskStatus.COMPLETED.value]
        return {
            "total": total,
            **counts,
            "active": counts[TaskStatus.IN_PROGRESS.value],
            "completion_rate": completed * 100 // total if total else 0,
            "average_completion_seconds": completed_seconds / completed if completed else 0.0,
        }

    def _oldest_in(self, statuses: Iterable[TaskStatus]) -> list[Task]:
        wanted = set(statuses)
        tasks = [task for task in self._tasks.values() if task.status in wanted]
        return sorted(tasks, key=lambda task: parse_timestamp(task.entered_at()))

    def cleanup_old_tasks(self, max_age_days: int) -> list[str]:
        """Remove finished tasks that entered their status more than ``max_age_days`` ago."""
        if max_age_days <= 0:
            return []
        cutoff = self._clock() - dt.timedelta(days=max_age_days)
        removed = [
            task.id
            for task in self._oldest_in(FINISHED_STATUSES)
            if parse_timestamp(task.entered_at()) < cutoff
        ]
        for task_id in removed:
            del self._tasks[task_id]
        if removed:
            logger.info("Cleaned up %d tasks older than %d days", len(removed), max_age_days)
        return removed

    def enforce_size_limit(self, max_size: int | None = None) -> list[str]:
        limit = self.max_size if max_size is None else max_size
        if limit <= 0 or len(self._tasks) <= limit:
            return []
        removed: list[str] = []
        for group in (
            (TaskStatus.COMPLETED,),
            (TaskStatus.FAILED, TaskStatus.TIMEOUT),
        ):
            for task in self._oldest_in(group):
                if len(self._tasks) <= limit:
                    break
                del self._tasks[task.id]
                removed.append(task.id)
        if removed:
            logger.info("Removed %d tasks to enforce queue size limit %d", len(removed), limit)
        return removed

    def integrity_problems(self) -> list[str]:
        problems: list[str] = []
        for key, task in self._tasks.items():
            if key != task.id:
                problems.append(f"Task stored under {key} has id {task.id}")
            if not MIN_PRIORITY <= task.priority <= MAX_PRIORITY:
                problems.append(f"Task {task.id} has out-of-range priority {task.priority}")
            if task.retry_count < 0:
                problems.append(f"Task {task.id} has negative retry count")
            if task.retry_count > task.max_retries:
                problems.append(
                    f"Task {task.id} retry count {task.retry_count} exceeds maximum {task.max_retries}"
                )
            if task.is_github and task.github_number is None:
                problems.append(f"GitHub task {task.id} is missing its number")
        return problems

    def to_records(self) -> list[dict[str, Any]]:
        return [task.to_dict() for task in self._tasks.values()]

    def replace_all(self, tasks: Iterable[Task]) -> None:
        """Swap in a freshly loaded task set, validating it first."""
        incoming: dict[str, Task] = {}
        for task in tasks:
            validate_task_id(task.id)
            if task.id in incoming:
                raise DuplicateTaskError(f"Duplicate task id in document: {task.id}")
            validate_priority(task.priority)
            _validate_positive_int("retry_count", task.retry_count, allow_zero=True)
            _validate_positive_int("max_retries", task.max_retries, allow_zero=True)
            parse_timestamp(task.created_at)
            incoming[task.id] = task
        self._tasks = incoming
