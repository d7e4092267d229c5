"""Filesystem layout, crash-safe document IO and backups for the task queue."""

from __future__ import annotations

from dataclasses import dataclass
import datetime as dt
import json
import logging
import os
from pathlib import Path
import shutil
import tempfile
import time
from typing import Any

from .core import TaskQueue
from .models import (
    DOCUMENT_KEYS,
    DOCUMENT_VERSION,
    CorruptDocumentError,
    QueueError,
    QueueIOError,
    Task,
)

logger = logging.getLogger(__name__)

QUEUE_FILE_NAME = "task-queue.json"
BACKUP_DIR_NAME = "backups"
LOCK_DIR_NAME = "locks"
BACKUP_GLOB = "backup-*.json"
TEMP_SUFFIX = ".tmp"
SAVE_BACKUP_SUFFIX = "before-save"


@dataclass(slots=True)
class BackupInfo:
    path: Path
    size_bytes: int
    modified: float

    @property
    def name(self) -> str:
        return self.path.name

    def to_dict(self) -> dict[str, Any]:
        return {"file": str(self.path), "size_bytes": self.size_bytes, "modified": self.modified}


def _timestamp() -> str:
    return dt.datetime.now().astimezone().isoformat(timespec="seconds")


def _backup_stamp() -> str:
    return dt.datetime.now().strftime("%Y%m%d-%H%M%S")


def build_document(tasks: list[dict[str, Any]]) -> dict[str, Any]:
    return {"version": DOCUMENT_VERSION, "timestamp": _timestamp(), "tasks": tasks}


def parse_document(text: str, source: Path | str = "<document>") -> dict[str, Any]:
    """Parse and structurally validate a queue document."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CorruptDocumentError(f"Invalid JSON in queue file {source}: {exc}") from exc
    if not isinstance(data, dict):
        raise CorruptDocumentError(f"Queue file {source} is not a JSON object")
    for key in DOCUMENT_KEYS:
        if key not in data:
            raise CorruptDocumentError(f"Missing required field '{key}' in queue file: {source}")
    if not isinstance(data["tasks"], list):
        raise CorruptDocumentError(f"Field 'tasks' must be a list in queue file: {source}")
    for index, record in enumerate(data["tasks"]):
        if not isinstance(record, dict) or not record.get("id"):
            raise CorruptDocumentError(f"Task entry {index} in {source} has no id")
        if not isinstance(record["id"], str):
            raise CorruptDocumentError(f"Task entry {index} in {source} has a non-string id")
    return data


def tasks_from_document(data: dict[str, Any], source: Path | str = "<document>") -> list[Task]:
    try:
        return [Task.from_dict(record) for record in data["tasks"]]
    except (TypeError, ValueError) as exc:
        raise CorruptDocumentError(f"Invalid task record in {source}: {exc}") from exc


class QueueStore:
    """Durable representation of a task queue as a single versioned JSON document."""

    def __init__(self, queue_dir: Path) -> None:
        self.queue_dir = Path(queue_dir)

    @property
    def queue_file(self) -> Path:
        return self.queue_dir / QUEUE_FILE_NAME

    @property
    def backup_dir(self) -> Path:
        return self.queue_dir / BACKUP_DIR_NAME

    @property
    def lock_dir(self) -> Path:
        return self.queue_dir / LOCK_DIR_NAME

    def ensure_layout(self) -> None:
        for path in (self.queue_dir, self.backup_dir, self.lock_dir):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise QueueIOError(f"Failed to create directory {path}: {exc}") from exc

    def signature(self) -> tuple[int, int, int] | None:
        """Change marker for the document: mtime, size and inode.

        Every save renames a fresh file into place, so consecutive versions
        differ in inode even when the filesystem clock has not ticked.
        """
        try:
            stat = self.queue_file.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_size, stat.st_ino

    def _write_atomic(self, target: Path, text: str) -> None:
        """Write ``text`` next to ``target`` and rename it into place."""
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{target.name}.", suffix=TEMP_SUFFIX, dir=target.parent
            )
        except OSError as exc:
            raise QueueIOError(f"Failed to create temp file for {target}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, target)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise QueueIOError(f"Failed to write {target}: {exc}") from exc

    def _write_document(self, data: dict[str, Any]) -> None:
        self._write_atomic(self.queue_file, json.dumps(data, indent=2) + "\n")

    def save(self, queue: TaskQueue, backup_before: bool = True) -> Path:
        self.ensure_layout()
        if backup_before and self.queue_file.exists():
            try:
                self.create_backup(SAVE_BACKUP_SUFFIX, overwrite=True)
            except QueueIOError as exc:
                logger.warning("Backup creation failed: %s", exc)
        records = queue.to_records()
        self._write_document(build_document(records))
        logger.info("Queue state saved: %d tasks", len(records))
        return self.queue_file

    def initialize_empty(self) -> None:
        self.ensure_layout()
        self._write_document(build_document([]))
        logger.info("Initialized empty queue at %s", self.queue_file)

    def read_document(self, path: Path | None = None) -> dict[str, Any]:
        source = path or self.queue_file
        try:
            text = source.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise QueueIOError(f"Queue file not found: {source}") from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise QueueIOError(f"Failed to read {source}: {exc}") from exc
        return parse_document(text, source)

    def validate(self, path: Path | None = None) -> dict[str, Any]:
        """Structural integrity check; returns the parsed document on success."""
        source = path or self.queue_file
        data = self.read_document(source)
        tasks_from_document(data, source)
        logger.info("Queue file validation passed: %s", source)
        return data

    def load(self, queue: TaskQueue) -> int:
        if not self.queue_file.exists():
            logger.info("No existing queue file, starting with empty queue")
            self.initialize_empty()
            queue.replace_all([])
            return 0
        data = self.read_document()
        tasks = tasks_from_document(data, self.queue_file)
        try:
            queue.replace_all(tasks)
        except (QueueError, TypeError, ValueError) as exc:
            raise CorruptDocumentError(f"Invalid task data in {self.queue_file}: {exc}") from exc
        logger.info("Loaded queue state: %d tasks", len(tasks))
        return len(tasks)

    def _unique_backup_path(self, suffix: str) -> Path:
        candidate = self.backup_dir / f"backup-{suffix}.json"
        if not candidate.exists():
            return candidate
        prefix = f"backup-{suffix}-"
        highest = 0
        for path in self.backup_dir.glob(f"{prefix}*.json"):
            counter = path.stem[len(prefix) :]
            if counter.isdigit():
                highest = max(highest, int(counter))
        return self.backup_dir / f"{prefix}{highest + 1}.json"

    def create_backup(self, suffix: str | None = None, *, overwrite: bool = False) -> Path | None:
        """Copy the current document into the backup directory.

        Named backups never replace each other unless ``overwrite`` is set,
        which keeps a single rolling snapshot under that name.
        """
        if not self.queue_file.exists():
            logger.debug("No queue file to back up")
            return None
        self.ensure_layout()
        name = suffix or _backup_stamp()
        if overwrite:
            backup_file = self.backup_dir / f"backup-{name}.json"
        else:
            backup_file = self._unique_backup_path(name)
        try:
            shutil.copy2(self.queue_file, backup_file)
        except OSError as exc:
            raise QueueIOError(f"Failed to create backup {backup_file}: {exc}") from exc
        logger.debug("Created backup: %s", backup_file)
        return backup_file

    def restore_from_backup(self, backup_file: Path, queue: TaskQueue) -> int:
        backup_file = Path(backup_file)
        if not backup_file.exists() and not backup_file.is_absolute():
            backup_file = self.backup_dir / backup_file
        if not backup_file.exists():
            raise QueueIOError(f"Backup file not found: {backup_file}")
        data = self.validate(backup_file)

        try:
            self.create_backup(f"before-restore-{_backup_stamp()}")
        except QueueIOError as exc:
            logger.warning("Failed to back up current state before restore: %s", exc)

        self.ensure_layout()
        self._write_document(data)
        logger.info("Restored from backup: %s", backup_file)
        return self.load(queue)

    def list_backups(self) -> list[BackupInfo]:
        if not self.backup_dir.is_dir():
            return []
        backups: list[BackupInfo] = []
        for path in sorted(self.backup_dir.glob(BACKUP_GLOB)):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            backups.append(BackupInfo(path=path, size_bytes=stat.st_size, modified=stat.st_mtime))
        return backups

    def cleanup_old_backups(self, retention_days: int) -> int:
        if retention_days <= 0:
            logger.debug("Backup cleanup disabled (retention_days: %d)", retention_days)
            return 0
        cutoff = time.time() - retention_days * 86400
        deleted = 0
        for backup in self.list_backups():
            if backup.modified >= cutoff:
                continue
            try:
                backup.path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to delete backup %s: %s", backup.path, exc)
                continue
            deleted += 1
            logger.debug("Deleted old backup: %s", backup.path)
        if deleted:
            logger.info("Cleaned up %d old backups (older than %d days)", deleted, retention_days)
        return deleted

    def cleanup_temp_files(self, max_age_seconds: float = 3600) -> int:
        """Remove temp files left behind by saves that never reached the rename."""
        if not self.queue_dir.is_dir():
            return 0
        cutoff = time.time() - max_age_seconds
        removed = 0
        for path in self.queue_dir.glob(f".{QUEUE_FILE_NAME}.*{TEMP_SUFFIX}"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info("Removed %d orphaned temp files", removed)
        return removed

    def file_stats(self) -> dict[str, Any]:
        if not self.queue_file.exists():
            return {"exists": False, "file": str(self.queue_file)}
        stat = self.queue_file.stat()
        try:
            task_count: int | None = len(self.read_document()["tasks"])
        except QueueError:
            task_count = None
        return {
            "exists": True,
            "file": str(self.queue_file),
            "size_bytes": stat.st_size,
            "task_count": task_count,
            "last_modified": stat.st_mtime,
        }
