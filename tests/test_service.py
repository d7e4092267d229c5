from __future__ import annotations

import json
from pathlib import Path
import time

import pytest

from resume_queue import locking
from resume_queue.config import QueueConfig
from resume_queue.models import (
    CorruptDocumentError,
    InvalidTransitionError,
    LockTimeoutError,
    QueueEmptyError,
    QueueFullError,
    QueueIOError,
    TaskStatus,
)
from resume_queue.service import HealthLevel, QueueService


def _service(tmp_path: Path, **overrides) -> QueueService:
    cfg = QueueConfig(**{"lock_timeout": 1.0, "backup_on_save": False, **overrides})
    return QueueService(tmp_path / "queue", cfg)


def test_mutations_are_persisted_immediately(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    task_id = svc.add_task(priority=2, title="Resume build")
    svc.update_status(task_id, "in_progress")

    data = json.loads(svc.store.queue_file.read_text(encoding="utf-8"))
    assert [record["id"] for record in data["tasks"]] == [task_id]
    assert data["tasks"][0]["status"] == "in_progress"


def test_two_services_see_each_others_writes(tmp_path: Path) -> None:
    first = _service(tmp_path)
    second = _service(tmp_path)
    first.add_github_issue(7)
    assert second.get_task("issue-7").github_number == 7
    second.update_priority("issue-7", 1)
    first.add_github_pr(8)
    assert second.next_task() == "issue-7"
    assert [task.id for task in first.list_tasks()] == ["issue-7", "pr-8"]


def test_save_keeps_tasks_added_by_another_service(tmp_path: Path) -> None:
    first = _service(tmp_path)
    second = _service(tmp_path)
    first.add_task(task_id="mine")
    second.add_task(task_id="theirs")
    first.save(backup_before=False)

    data = json.loads(first.store.queue_file.read_text(encoding="utf-8"))
    assert sorted(record["id"] for record in data["tasks"]) == ["mine", "theirs"]
    assert [task.id for task in first.list_tasks()] == ["mine", "theirs"]


def test_save_on_fresh_service_does_not_drop_persisted_tasks(tmp_path: Path) -> None:
    _service(tmp_path).add_task(task_id="a")
    fresh = _service(tmp_path)
    fresh.save()
    assert [task.id for task in _service(tmp_path).list_tasks()] == ["a"]


def test_claim_next_moves_task_to_in_progress(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(priority=5, task_id="later")
    svc.add_task(priority=1, task_id="urgent")
    assert svc.claim_next() == "urgent"
    assert svc.get_task("urgent").status == TaskStatus.IN_PROGRESS
    assert svc.claim_next() == "later"
    with pytest.raises(QueueEmptyError):
        svc.claim_next()


def test_failed_validation_leaves_document_unchanged(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(task_id="a")
    before = svc.store.queue_file.read_text(encoding="utf-8")
    with pytest.raises(InvalidTransitionError):
        svc.update_status("a", "completed")
    assert svc.store.queue_file.read_text(encoding="utf-8") == before


def test_failed_save_does_not_leave_phantom_task(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(task_id="kept")

    def _fail(*args, **kwargs):
        raise QueueIOError("disk full")

    monkeypatch.setattr(svc.store, "_write_document", _fail)
    with pytest.raises(QueueIOError):
        svc.add_task(task_id="phantom")
    monkeypatch.undo()

    assert [task.id for task in svc.list_tasks()] == ["kept"]


def test_queue_full_from_config(tmp_path: Path) -> None:
    svc = _service(tmp_path, max_queue_size=1)
    svc.add_task(task_id="one")
    with pytest.raises(QueueFullError):
        svc.add_task(task_id="two")


def test_retry_flow_through_service(tmp_path: Path) -> None:
    svc = _service(tmp_path, max_retries=1)
    svc.add_task(task_id="job")
    svc.update_status("job", "in_progress")
    svc.record_error("job", "crashed", 3)
    assert svc.check_retry_eligible("job")
    assert svc.retry_task("job") == 1
    svc.update_status("job", "in_progress")
    svc.update_status("job", "timeout")
    assert not svc.check_retry_eligible("job")
    task = svc.get_task("job")
    assert task.last_error == "crashed"
    assert task.retry_count == 1


def test_operations_time_out_while_another_holder_has_the_lock(tmp_path: Path) -> None:
    svc = _service(tmp_path, lock_timeout=0.2)
    svc.add_task(task_id="a")
    other = locking.QueueLock(svc.store.lock_dir)
    other.acquire()
    try:
        with pytest.raises(LockTimeoutError):
            svc.add_task(task_id="b")
        info = svc.lock_info()
        assert info is not None and not info.stale
    finally:
        other.release()
    assert svc.lock_info() is None


def test_clear_creates_safety_backup(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(task_id="a")
    svc.add_task(task_id="b")
    assert svc.clear() == 2
    assert svc.list_tasks() == []
    assert [info.name for info in svc.list_backups()] == ["backup-before-clear.json"]
    assert svc.restore_from_backup(Path("backup-before-clear.json")) == 2
    assert sorted(task.id for task in svc.list_tasks()) == ["a", "b"]


def test_clear_without_backup(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(task_id="a")
    svc.clear(backup=False)
    assert svc.list_backups() == []


def test_backup_on_save_setting(tmp_path: Path) -> None:
    svc = _service(tmp_path, backup_on_save=True)
    svc.add_task(task_id="a")
    svc.add_task(task_id="b")
    names = [info.name for info in svc.list_backups()]
    assert names == ["backup-before-save.json"]


def test_save_backup_is_a_single_rolling_snapshot(tmp_path: Path) -> None:
    svc = _service(tmp_path, backup_on_save=True)
    svc.add_task(task_id="a")
    for round_number in range(30):
        svc.update_priority("a", 1 + round_number % 2)
    assert [info.name for info in svc.list_backups()] == ["backup-before-save.json"]
    snapshot = json.loads((svc.store.backup_dir / "backup-before-save.json").read_text(encoding="utf-8"))
    assert snapshot["tasks"][0]["priority"] == 1


def test_unchanged_priority_skips_save_and_backup(tmp_path: Path) -> None:
    svc = _service(tmp_path, backup_on_save=True)
    svc.add_task(task_id="a", priority=4)
    before = svc.store.signature()
    assert svc.update_priority("a", 4) is False
    assert svc.store.signature() == before
    assert svc.list_backups() == []
    assert svc.update_priority("a", 2) is True
    assert svc.store.signature() != before


def test_cached_reads_follow_writes(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(task_id="a")
    assert svc.cached_pending_count() == 1
    svc.add_task(task_id="b")
    assert svc.cached_exists("b")
    svc.update_status("b", "in_progress")
    assert [task.id for task in svc.cached_by_status("in_progress")] == ["b"]
    assert svc.cached_stats()["total"] == 2
    assert svc.cached_task("a").status == TaskStatus.PENDING
    assert svc.cached_batch(["a", "c"]).missing == ["c"]


def test_validate_reports_clean_queue(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(task_id="a")
    assert svc.validate() == []


def test_corrupt_document_surfaces_and_restore_recovers(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(task_id="a")
    backup = svc.create_backup("good")
    svc.store.queue_file.write_text("{broken", encoding="utf-8")

    fresh = _service(tmp_path)
    with pytest.raises(CorruptDocumentError):
        fresh.list_tasks()
    assert fresh.restore_from_backup(backup) == 1
    assert [task.id for task in fresh.list_tasks()] == ["a"]


def test_run_maintenance_report(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(task_id="a")
    report = svc.run_maintenance(task_days=7, backup_days=30)
    assert report.total == 0
    assert set(report.to_dict()) == {
        "tasks_removed",
        "size_limit_removed",
        "backups_removed",
        "stale_locks_removed",
        "temp_files_removed",
        "total",
    }


def test_force_unlock(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.ensure_layout()
    assert svc.force_unlock() is False
    other = locking.QueueLock(svc.store.lock_dir)
    other.acquire()
    assert svc.force_unlock() is True
    other.release()


def _fail(svc: QueueService, task_id: str, status: str = "failed") -> None:
    svc.add_task(task_id=task_id)
    svc.update_status(task_id, "in_progress")
    svc.update_status(task_id, status)


def test_health_of_clean_queue(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(task_id="a")
    health = svc.health()
    assert health.level == HealthLevel.GOOD
    assert health.to_dict() == {
        "level": "good",
        "message": "Queue operating normally",
        "metrics": {"failed_tasks": 0, "timeout_tasks": 0, "total_tasks": 1, "stale_locks": 0},
    }


def test_health_warns_on_failures_and_stale_locks(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    _fail(svc, "a")
    _fail(svc, "b", "timeout")
    (svc.store.lock_dir / "session.lock").write_text(
        json.dumps({"pid": 999999999, "acquired_at": time.time()}), encoding="utf-8"
    )
    health = svc.health()
    assert health.level == HealthLevel.WARNING
    assert health.message == (
        "Some failed tasks detected: 1; Some timeout tasks detected: 1; Stale locks detected: 1"
    )
    assert health.metrics["stale_locks"] == 1


def test_health_critical_is_not_downgraded(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    for index in range(10):
        _fail(svc, f"f{index}")
    _fail(svc, "t0", "timeout")
    (svc.store.lock_dir / "session.lock").write_text("garbage", encoding="utf-8")
    health = svc.health()
    assert health.level == HealthLevel.CRITICAL
    assert "High number of failed tasks: 10" in health.message
    assert "Some timeout tasks detected: 1" in health.message
    assert health.metrics["failed_tasks"] == 10


def test_health_reports_corrupt_document(tmp_path: Path) -> None:
    svc = _service(tmp_path)
    svc.add_task(task_id="a")
    svc.store.queue_file.write_text("{broken", encoding="utf-8")
    health = svc.health()
    assert health.level == HealthLevel.CRITICAL
    assert health.message == "Queue file validation failed"
    assert health.metrics["total_tasks"] == 0
