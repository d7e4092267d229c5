"""Lock-guarded, persisted queue operations for the session monitor and CLI."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import enum
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

from . import locking
from .cache import BatchResult, QueueCache
from .config import QueueConfig, resolve_config
from .core import TaskQueue
from .models import (
    DEFAULT_PRIORITY,
    CorruptDocumentError,
    QueueError,
    QueueIOError,
    Task,
    TaskStatus,
    TaskType,
)
from .storage import BackupInfo, QueueStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class MaintenanceReport:
    tasks_removed: int = 0
    size_limit_removed: int = 0
    backups_removed: int = 0
    stale_locks_removed: int = 0
    temp_files_removed: int = 0

    @property
    def total(self) -> int:
        return (
            self.tasks_removed
            + self.size_limit_removed
            + self.backups_removed
            + self.stale_locks_removed
            + self.temp_files_removed
        )

    def to_dict(self) -> dict[str, int]:
        return {**asdict(self), "total": self.total}


class HealthLevel(str, enum.Enum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


HEALTH_SEVERITY = {HealthLevel.GOOD: 0, HealthLevel.WARNING: 1, HealthLevel.CRITICAL: 2}
FAILED_CRITICAL_THRESHOLD = 10
TIMEOUT_CRITICAL_THRESHOLD = 5


@dataclass(slots=True)
class QueueHealth:
    level: HealthLevel = HealthLevel.GOOD
    issues: list[str] = field(default_factory=list)
    metrics: dict[str, int] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return "; ".join(self.issues) if self.issues else "Queue operating normally"

    def flag(self, level: HealthLevel, issue: str) -> None:
        # The report keeps the worst level seen.
        if HEALTH_SEVERITY[level] > HEALTH_SEVERITY[self.level]:
            self.level = level
        self.issues.append(issue)

    def to_dict(self) -> dict[str, Any]:
        return {"level": self.level.value, "message": self.message, "metrics": dict(self.metrics)}


class QueueService:
    def __init__(
        self,
        queue_dir: Path,
        config: QueueConfig | None = None,
        *,
        warn: Callable[[str], None] | None = None,
    ) -> None:
        self.queue_dir = Path(queue_dir).resolve()
        self.config = config or resolve_config(self.queue_dir, warn=warn)
        self.store = QueueStore(self.queue_dir)
        self.queue = TaskQueue(
            max_size=self.config.max_queue_size,
            max_retries=self.config.max_retries,
            default_timeout=self.config.default_timeout,
        )
        self.lock = locking.QueueLock(
            self.store.lock_dir,
            timeout=self.config.lock_timeout,
            max_age=self.config.lock_max_age,
        )
        self.cache = QueueCache(self.store, ttl=self.config.cache_ttl)
        self._synced_signature: tuple[int, int, int] | None = None
        self._loaded = False

    def ensure_layout(self) -> None:
        self.store.ensure_layout()

    def _sync(self, *, force: bool = False) -> None:
        """Reload from disk when another process changed the document."""
        signature = self.store.signature()
        if not force and self._loaded and signature == self._synced_signature:
            return
        self.store.load(self.queue)
        self._synced_signature = self.store.signature()
        self._loaded = True

    def _read(self, fn: Callable[[TaskQueue], T]) -> T:
        with self.lock.hold():
            self._sync()
            return fn(self.queue)

    def _mutate(
        self,
        reason: str,
        fn: Callable[[TaskQueue], T],
        *,
        backup: bool | None = None,
        changed: Callable[[T], bool] | None = None,
    ) -> T:
        backup_before = self.config.backup_on_save if backup is None else backup
        with self.lock.hold():
            self._sync()
            result = fn(self.queue)
            if changed is not None and not changed(result):
                logger.debug("Nothing changed for %s, skipping save", reason)
                return result
            try:
                self.store.save(self.queue, backup_before=backup_before)
            except QueueIOError:
                # Memory must not drift from the untouched document.
                self._sync(force=True)
                raise
            finally:
                self.cache.invalidate(reason)
            self._synced_signature = self.store.signature()
            return result

    def load(self) -> int:
        with self.lock.hold():
            self._sync(force=True)
            self.cache.invalidate("load")
            return len(self.queue)

    def save(self, backup_before: bool = True) -> Path:
        """Rewrite the document from the latest committed state.

        Every mutation is already persisted by the time it returns, so this
        only re-syncs before writing; it never writes an out-of-date copy.
        """
        return self._mutate("save", lambda q: self.store.queue_file, backup=backup_before)

    def add_task(
        self,
        task_type: TaskType | str = TaskType.CUSTOM,
        priority: int = DEFAULT_PRIORITY,
        task_id: str | None = None,
        **fields: Any,
    ) -> str:
        return self._mutate("add", lambda q: q.add(task_type, priority, task_id, **fields))

    def add_github_issue(
        self,
        number: int | str,
        priority: int = DEFAULT_PRIORITY,
        title: str | None = None,
        labels: Iterable[str] | str | None = None,
    ) -> str:
        return self._mutate("add", lambda q: q.add_github_issue(number, priority, title, labels))

    def add_github_pr(self, number: int | str, priority: int = DEFAULT_PRIORITY, title: str | None = None) -> str:
        return self._mutate("add", lambda q: q.add_github_pr(number, priority, title))

    def remove_task(self, task_id: str) -> None:
        self._mutate("remove", lambda q: q.remove(task_id))

    def next_task(self, status: TaskStatus | str = TaskStatus.PENDING) -> str:
        return self._read(lambda q: q.get_next(status))

    def claim_next(self) -> str:
        """Dequeue the next pending task by moving it to in_progress."""

        def _claim(q: TaskQueue) -> str:
            task_id = q.get_next(TaskStatus.PENDING)
            q.update_status(task_id, TaskStatus.IN_PROGRESS, "claimed")
            return task_id

        return self._mutate("claim", _claim, backup=False)

    def update_status(self, task_id: str, new_status: TaskStatus | str, details: str | None = None) -> None:
        self._mutate("status", lambda q: q.update_status(task_id, new_status, details))

    def update_priority(self, task_id: str, priority: int) -> bool:
        return self._mutate(
            "priority",
            lambda q: q.update_priority(task_id, priority),
            changed=bool,
        )

    def increment_retry(self, task_id: str) -> int:
        return self._mutate("retry", lambda q: q.increment_retry(task_id))

    def record_error(self, task_id: str, message: str, code: int = 1) -> None:
        self._mutate("error", lambda q: q.record_error(task_id, message, code))

    def retry_task(self, task_id: str) -> int:
        return self._mutate("retry", lambda q: q.retry(task_id))

    def check_retry_eligible(self, task_id: str) -> bool:
        return self._read(lambda q: q.check_retry_eligible(task_id))

    def get_task(self, task_id: str) -> Task:
        return self._read(lambda q: q.get(task_id))

    def list_tasks(self, status: TaskStatus | str | None = None) -> list[Task]:
        return self._read(lambda q: q.list(status))

    def stats(self) -> dict[str, Any]:
        return self._read(lambda q: q.stats())

    def duration(self, task_id: str) -> float:
        return self._read(lambda q: q.duration(task_id))

    def clear(self, backup: bool = True) -> int:
        def _clear(q: TaskQueue) -> int:
            if backup and len(q):
                self.store.create_backup("before-clear")
            return q.clear()

        return self._mutate("clear", _clear, backup=False)

    def cleanup_old_tasks(self, max_age_days: int | None = None) -> list[str]:
        days = self.config.auto_cleanup_days if max_age_days is None else max_age_days
        return self._mutate("cleanup", lambda q: q.cleanup_old_tasks(days), backup=False)

    def enforce_size_limit(self, max_size: int | None = None) -> list[str]:
        limit = self.config.max_queue_size if max_size is None else max_size
        return self._mutate("size-limit", lambda q: q.enforce_size_limit(limit), backup=False)

    def create_backup(self, suffix: str | None = None) -> Path | None:
        return self.store.create_backup(suffix)

    def restore_from_backup(self, backup_file: Path) -> int:
        with self.lock.hold():
            try:
                count = self.store.restore_from_backup(backup_file, self.queue)
            except QueueError:
                self._loaded = False
                raise
            finally:
                self.cache.invalidate("restore")
            self._synced_signature = self.store.signature()
            self._loaded = True
            return count

    def list_backups(self) -> list[BackupInfo]:
        return self.store.list_backups()

    def cleanup_old_backups(self, retention_days: int | None = None) -> int:
        days = self.config.backup_retention_days if retention_days is None else retention_days
        return self.store.cleanup_old_backups(days)

    def validate(self) -> list[str]:
        """Validate the document on disk and the reconciled collection."""
        with self.lock.hold():
            self._sync()
            self.store.validate()
            return self.queue.integrity_problems()

    def lock_info(self) -> locking.LockInfo | None:
        return self.lock.info()

    def force_unlock(self) -> bool:
        return locking.force_unlock(self.store.lock_dir, self.lock.resource)

    def run_maintenance(
        self,
        *,
        task_days: int | None = None,
        backup_days: int | None = None,
    ) -> MaintenanceReport:
        report = MaintenanceReport()
        report.stale_locks_removed = locking.cleanup_stale_locks(
            self.store.lock_dir, self.config.lock_max_age
        )
        report.tasks_removed = len(self.cleanup_old_tasks(task_days))
        report.size_limit_removed = len(self.enforce_size_limit())
        report.backups_removed = self.cleanup_old_backups(backup_days)
        report.temp_files_removed = self.store.cleanup_temp_files()
        logger.info("Maintenance finished: %s", report.to_dict())
        return report

    def health(self) -> QueueHealth:
        """Summarise failed/timeout counts, document integrity and stale locks."""
        report = QueueHealth()
        counts: dict[str, Any] = {}
        with self.lock.hold():
            try:
                self._sync()
                self.store.validate()
                counts = self.queue.stats()
            except (CorruptDocumentError, QueueIOError) as exc:
                logger.warning("Queue file validation failed: %s", exc)
                report.flag(HealthLevel.CRITICAL, "Queue file validation failed")

        failed = counts.get("failed", 0)
        timeout = counts.get("timeout", 0)
        for count, name, threshold in (
            (failed, "failed", FAILED_CRITICAL_THRESHOLD),
            (timeout, "timeout", TIMEOUT_CRITICAL_THRESHOLD),
        ):
            if count >= threshold:
                report.flag(HealthLevel.CRITICAL, f"High number of {name} tasks: {count}")
            elif count > 0:
                report.flag(HealthLevel.WARNING, f"Some {name} tasks detected: {count}")

        stale = sum(
            1 for info in locking.list_locks(self.store.lock_dir, self.config.lock_max_age) if info.stale
        )
        if stale:
            report.flag(HealthLevel.WARNING, f"Stale locks detected: {stale}")

        report.metrics = {
            "failed_tasks": failed,
            "timeout_tasks": timeout,
            "total_tasks": counts.get("total", 0),
            "stale_locks": stale,
        }
        return report

    def cached_task(self, task_id: str) -> Task | None:
        return self.cache.get_by_id(task_id)

    def cached_exists(self, task_id: str) -> bool:
        return self.cache.exists(task_id)

    def cached_stats(self) -> dict[str, int]:
        return self.cache.stats()

    def cached_by_status(self, status: TaskStatus | str = "all") -> list[Task]:
        return self.cache.by_status(status)

    def cached_pending_count(self) -> int:
        return self.cache.pending_count()

    def cached_batch(self, task_ids: Iterable[str]) -> BatchResult:
        return self.cache.batch(task_ids)
