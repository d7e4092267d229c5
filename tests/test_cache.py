from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from resume_queue.cache import QueueCache
from resume_queue.core import TaskQueue
from resume_queue.models import DOCUMENT_VERSION, CorruptDocumentError, TaskStatus, TaskType
from resume_queue.storage import QueueStore


class Ticker:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def store(tmp_path: Path, clock) -> QueueStore:
    store = QueueStore(tmp_path / "queue")
    queue = TaskQueue(clock=clock)
    queue.add(TaskType.CUSTOM, 5, "a")
    queue.add(TaskType.CUSTOM, 2, "b")
    queue.add_github_pr(9)
    queue.update_status("b", TaskStatus.IN_PROGRESS)
    store.save(queue, backup_before=False)
    return store


def _append_task(store: QueueStore, task_id: str) -> None:
    queue = TaskQueue()
    store.load(queue)
    queue.add(TaskType.CUSTOM, 5, task_id)
    store.save(queue, backup_before=False)


def test_lookups_come_from_one_build(store: QueueStore) -> None:
    cache = QueueCache(store, clock=Ticker())
    assert cache.get_by_id("a").priority == 5
    assert cache.exists("pr-9")
    assert not cache.exists("zzz")
    assert cache.get_by_id("zzz") is None
    assert cache.misses == 1
    assert cache.hits == 3


def test_stats_and_status_filters(store: QueueStore) -> None:
    cache = QueueCache(store, clock=Ticker())
    stats = cache.stats()
    assert stats["total"] == 3
    assert stats["pending"] == 2
    assert stats["in_progress"] == 1
    assert stats["failed"] == 0
    assert cache.pending_count() == 2
    assert [task.id for task in cache.by_status("pending")] == ["a", "pr-9"]
    assert [task.id for task in cache.by_status(TaskStatus.IN_PROGRESS)] == ["b"]
    assert len(cache.by_status("all")) == 3


def test_document_change_triggers_rebuild(store: QueueStore) -> None:
    cache = QueueCache(store, clock=Ticker())
    assert not cache.exists("new")
    _append_task(store, "new")
    assert not cache.is_valid()
    assert cache.exists("new")
    assert cache.misses == 2


def test_ttl_expiry_triggers_rebuild(store: QueueStore) -> None:
    ticker = Ticker()
    cache = QueueCache(store, ttl=10, clock=ticker)
    cache.stats()
    ticker.now += 5
    assert cache.is_valid()
    ticker.now += 6
    assert not cache.is_valid()
    cache.stats()
    assert cache.misses == 2


def test_invalidate_forces_rebuild(store: QueueStore) -> None:
    cache = QueueCache(store, clock=Ticker())
    cache.stats()
    cache.invalidate("test")
    assert not cache.is_valid()
    assert cache.refresh_if_needed() is False
    assert cache.refresh_if_needed() is True


def test_batch_reports_missing_ids(store: QueueStore) -> None:
    cache = QueueCache(store, clock=Ticker())
    result = cache.batch(["a", "ghost", "b", "a"])
    assert sorted(result.found) == ["a", "b"]
    assert result.missing == ["ghost"]
    assert not result.complete
    assert cache.batch(["pr-9"]).complete


def test_hit_ratio_and_reset(store: QueueStore) -> None:
    cache = QueueCache(store, clock=Ticker())
    assert cache.hit_ratio == 0.0
    for _ in range(4):
        cache.exists("a")
    assert cache.hit_ratio == 0.75
    report = cache.cache_stats()
    assert report["hits"] == 3
    assert report["misses"] == 1
    assert report["cached_tasks"] == 3
    cache.reset_stats()
    assert cache.hits == cache.misses == 0


def test_missing_document_is_an_empty_cache(tmp_path: Path) -> None:
    cache = QueueCache(QueueStore(tmp_path / "queue"), clock=Ticker())
    assert cache.stats()["total"] == 0
    assert cache.pending_count() == 0
    assert cache.is_valid()


def test_cached_task_is_a_copy(store: QueueStore) -> None:
    cache = QueueCache(store, clock=Ticker())
    task = cache.get_by_id("a")
    task.labels.append("mutated")
    assert cache.get_by_id("a").labels == []


def test_touching_the_document_invalidates(store: QueueStore) -> None:
    cache = QueueCache(store, clock=Ticker())
    assert cache.exists("a")
    assert cache.is_valid()
    stat = store.queue_file.stat()
    later = stat.st_mtime_ns + 1_000_000_000
    os.utime(store.queue_file, ns=(later, later))
    assert not cache.is_valid()
    assert cache.exists("a")
    assert cache.misses == 2
    assert cache.hits == 0


def test_non_string_id_is_a_corrupt_document(store: QueueStore) -> None:
    store.queue_file.write_text(
        json.dumps({"version": DOCUMENT_VERSION, "timestamp": "x", "tasks": [{"id": ["x"]}]}),
        encoding="utf-8",
    )
    cache = QueueCache(store, clock=Ticker())
    with pytest.raises(CorruptDocumentError):
        cache.stats()
