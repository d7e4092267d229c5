from __future__ import annotations

import json
import os
from pathlib import Path
import time

import pytest

from resume_queue import storage
from resume_queue.core import TaskQueue
from resume_queue.models import (
    DOCUMENT_VERSION,
    CorruptDocumentError,
    QueueIOError,
    Task,
    TaskStatus,
    TaskType,
)


def _queue_with_tasks(clock) -> TaskQueue:
    queue = TaskQueue(clock=clock)
    queue.add(TaskType.CUSTOM, 3, "alpha", title="Alpha", metadata={"source": "test"})
    queue.add_github_issue(12, 1, labels=["bug"])
    queue.update_status("alpha", TaskStatus.IN_PROGRESS)
    return queue


def _write_doc(path: Path, payload) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload), encoding="utf-8")


def test_save_and_load_round_trip(tmp_path: Path, clock) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    original = _queue_with_tasks(clock)
    store.save(original, backup_before=False)

    loaded = TaskQueue(clock=clock)
    assert store.load(loaded) == 2
    assert loaded.to_records() == original.to_records()


def test_saved_document_shape(tmp_path: Path, clock) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    store.save(_queue_with_tasks(clock), backup_before=False)
    data = json.loads(store.queue_file.read_text(encoding="utf-8"))
    assert data["version"] == DOCUMENT_VERSION
    assert "timestamp" in data
    assert [record["id"] for record in data["tasks"]] == ["alpha", "issue-12"]
    assert data["tasks"][0]["status"] == "in_progress"
    assert data["tasks"][1]["type"] == "github_issue"


def test_load_missing_file_initializes_empty_document(tmp_path: Path) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    queue = TaskQueue()
    assert store.load(queue) == 0
    data = json.loads(store.queue_file.read_text(encoding="utf-8"))
    assert data["tasks"] == []
    assert store.backup_dir.is_dir()
    assert store.lock_dir.is_dir()


def test_failed_rename_leaves_previous_document_intact(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, clock
) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    queue = _queue_with_tasks(clock)
    store.save(queue, backup_before=False)
    before = store.queue_file.read_text(encoding="utf-8")

    def _boom(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(storage.os, "replace", _boom)
    queue.add(TaskType.CUSTOM, 5, "never-persisted")
    with pytest.raises(QueueIOError):
        store.save(queue, backup_before=False)
    monkeypatch.undo()

    assert store.queue_file.read_text(encoding="utf-8") == before
    assert list(store.queue_dir.glob(".task-queue.json.*.tmp")) == []


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        "[]",
        {"version": DOCUMENT_VERSION, "tasks": []},
        {"version": DOCUMENT_VERSION, "timestamp": "x", "tasks": {}},
        {"version": DOCUMENT_VERSION, "timestamp": "x", "tasks": [{"status": "pending"}]},
        {"version": DOCUMENT_VERSION, "timestamp": "x", "tasks": [{"id": ["x"], "status": "pending"}]},
        {"version": DOCUMENT_VERSION, "timestamp": "x", "tasks": [{"id": 7, "status": "pending"}]},
    ],
)
def test_structurally_invalid_documents_are_rejected(tmp_path: Path, payload) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    _write_doc(store.queue_file, payload)
    with pytest.raises(CorruptDocumentError):
        store.load(TaskQueue())


def test_invalid_task_record_is_rejected(tmp_path: Path) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    record = {
        "id": "a",
        "type": "custom",
        "status": "sleeping",
        "priority": 5,
        "retry_count": 0,
        "created_at": "2026-03-01T12:00:00+00:00",
    }
    _write_doc(store.queue_file, {"version": DOCUMENT_VERSION, "timestamp": "x", "tasks": [record]})
    with pytest.raises(CorruptDocumentError):
        store.validate()


def test_out_of_range_priority_on_disk_is_corrupt(tmp_path: Path) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    record = {
        "id": "a",
        "type": "custom",
        "status": "pending",
        "priority": 99,
        "retry_count": 0,
        "created_at": "2026-03-01T12:00:00+00:00",
    }
    _write_doc(store.queue_file, {"version": DOCUMENT_VERSION, "timestamp": "x", "tasks": [record]})
    queue = TaskQueue()
    with pytest.raises(CorruptDocumentError):
        store.load(queue)
    assert len(queue) == 0


def test_task_from_dict_keeps_unknown_keys_in_metadata() -> None:
    task = Task.from_dict(
        {
            "id": "legacy",
            "type": "custom",
            "status": "pending",
            "priority": 4,
            "retry_count": 0,
            "created_at": "2026-03-01T12:00:00+00:00",
            "session": "abc",
        }
    )
    assert task.metadata == {"session": "abc"}
    assert task.max_retries == 3


def test_backup_and_restore(tmp_path: Path, clock) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    queue = _queue_with_tasks(clock)
    store.save(queue, backup_before=False)
    backup = store.create_backup("manual")
    assert backup is not None
    assert backup.name == "backup-manual.json"

    queue.clear()
    store.save(queue, backup_before=False)
    assert store.load(TaskQueue()) == 0

    restored = TaskQueue()
    assert store.restore_from_backup(Path("backup-manual.json"), restored) == 2
    assert sorted(restored.ids()) == ["alpha", "issue-12"]
    names = [info.name for info in store.list_backups()]
    assert any(name.startswith("backup-before-restore-") for name in names)


def test_restore_rejects_corrupt_backup_without_touching_queue(tmp_path: Path, clock) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    store.save(_queue_with_tasks(clock), backup_before=False)
    before = store.queue_file.read_text(encoding="utf-8")
    bad = store.backup_dir / "backup-bad.json"
    bad.write_text("{oops", encoding="utf-8")

    with pytest.raises(CorruptDocumentError):
        store.restore_from_backup(bad, TaskQueue())
    assert store.queue_file.read_text(encoding="utf-8") == before


def test_restore_missing_backup_raises(tmp_path: Path) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    with pytest.raises(QueueIOError):
        store.restore_from_backup(Path("backup-nope.json"), TaskQueue())


def test_create_backup_without_queue_file(tmp_path: Path) -> None:
    assert storage.QueueStore(tmp_path / "queue").create_backup() is None


def test_backup_names_never_collide(tmp_path: Path, clock) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    store.save(_queue_with_tasks(clock), backup_before=False)
    first = store.create_backup("same")
    second = store.create_backup("same")
    assert first != second
    assert second is not None and second.name == "backup-same-1.json"
    (store.backup_dir / "backup-same-7.json").write_text("{}", encoding="utf-8")
    third = store.create_backup("same")
    assert third is not None and third.name == "backup-same-8.json"


def test_save_backs_up_previous_document(tmp_path: Path, clock) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    queue = _queue_with_tasks(clock)
    store.save(queue)
    assert store.list_backups() == []
    store.save(queue)
    assert [info.name for info in store.list_backups()] == ["backup-before-save.json"]
    queue.update_priority("alpha", 9)
    store.save(queue)
    queue.update_priority("alpha", 8)
    store.save(queue)
    assert [info.name for info in store.list_backups()] == ["backup-before-save.json"]
    snapshot = json.loads((store.backup_dir / "backup-before-save.json").read_text(encoding="utf-8"))
    assert {record["id"]: record["priority"] for record in snapshot["tasks"]}["alpha"] == 9


def test_cleanup_old_backups_honours_retention(tmp_path: Path, clock) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    store.save(_queue_with_tasks(clock), backup_before=False)
    old = store.create_backup("old")
    fresh = store.create_backup("fresh")
    assert old is not None and fresh is not None
    stale_time = time.time() - 40 * 86400
    os.utime(old, (stale_time, stale_time))

    assert store.cleanup_old_backups(0) == 0
    assert store.cleanup_old_backups(30) == 1
    assert not old.exists()
    assert fresh.exists()


def test_cleanup_temp_files_removes_only_old_orphans(tmp_path: Path, clock) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    store.save(_queue_with_tasks(clock), backup_before=False)
    orphan = store.queue_dir / ".task-queue.json.abc123.tmp"
    recent = store.queue_dir / ".task-queue.json.def456.tmp"
    orphan.write_text("{}", encoding="utf-8")
    recent.write_text("{}", encoding="utf-8")
    two_hours_ago = time.time() - 7200
    os.utime(orphan, (two_hours_ago, two_hours_ago))

    assert store.cleanup_temp_files() == 1
    assert not orphan.exists()
    assert recent.exists()
    assert store.queue_file.exists()


def test_signature_changes_on_every_save(tmp_path: Path, clock) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    assert store.signature() is None
    queue = _queue_with_tasks(clock)
    store.save(queue, backup_before=False)
    first = store.signature()
    store.save(queue, backup_before=False)
    assert store.signature() != first


def test_file_stats(tmp_path: Path, clock) -> None:
    store = storage.QueueStore(tmp_path / "queue")
    assert store.file_stats()["exists"] is False
    store.save(_queue_with_tasks(clock), backup_before=False)
    stats = store.file_stats()
    assert stats["exists"] is True
    assert stats["task_count"] == 2
    assert stats["size_bytes"] > 0
