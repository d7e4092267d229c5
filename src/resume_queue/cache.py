"""Read cache over the persisted queue document.

The index is rebuilt whenever the document on disk is replaced or the cache
outlives its TTL. It is a throughput optimisation only: readers that skip
the lock may see a snapshot up to ``ttl`` seconds old.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Iterable

from .models import Task, TaskStatus
from .storage import QueueStore

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0


@dataclass(slots=True)
class BatchResult:
    found: dict[str, Task] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing

    @property
    def tasks(self) -> list[Task]:
        return list(self.found.values())


class QueueCache:
    def __init__(
        self,
        store: QueueStore,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock
        self._records: list[dict[str, Any]] = []
        self._index: dict[str, int] = {}
        self._status_counts: dict[str, int] = {}
        self._document_signature: tuple[int, int, int] | None = None
        self._built_at = 0.0
        self._valid = False
        self.hits = 0
        self.misses = 0

    def invalidate(self, reason: str = "manual") -> None:
        self._records = []
        self._index = {}
        self._status_counts = {}
        self._document_signature = None
        self._built_at = 0.0
        self._valid = False
        logger.debug("Cache invalidated: %s", reason)

    def build(self) -> None:
        """Parse the document once and index it by id and status."""
        self.invalidate("rebuild")
        # Sample the signature before reading so a concurrent write shows up as a change.
        signature = self.store.signature()
        if signature is None:
            records: list[dict[str, Any]] = []
        else:
            records = list(self.store.read_document()["tasks"])

        index: dict[str, int] = {}
        counts: dict[str, int] = {}
        for position, record in enumerate(records):
            index[record["id"]] = position
            status = record.get("status", "unknown")
            counts[status] = counts.get(status, 0) + 1

        self._records = records
        self._index = index
        self._status_counts = counts
        self._document_signature = signature
        self._built_at = self._clock()
        self._valid = True
        logger.debug("Cache built: %d tasks indexed", len(index))

    def is_valid(self) -> bool:
        if not self._valid:
            return False
        if self.store.signature() != self._document_signature:
            logger.debug("Cache stale: queue file modified")
            return False
        if self._clock() - self._built_at >= self.ttl:
            logger.debug("Cache expired (ttl %.0fs)", self.ttl)
            return False
        return True

    def refresh_if_needed(self) -> bool:
        """Rebuild when invalid. Returns True on a cache hit."""
        if self.is_valid():
            self.hits += 1
            return True
        self.misses += 1
        self.build()
        return False

    def _task_at(self, position: int) -> Task:
        return Task.from_dict(dict(self._records[position]))

    def get_by_id(self, task_id: str) -> Task | None:
        self.refresh_if_needed()
        position = self._index.get(task_id)
        if position is None:
            return None
        return self._task_at(position)

    def exists(self, task_id: str) -> bool:
        self.refresh_if_needed()
        return task_id in self._index

    def stats(self) -> dict[str, int]:
        self.refresh_if_needed()
        counts = {status.value: 0 for status in TaskStatus}
        counts.update(self._status_counts)
        return {"total": len(self._records), **counts}

    def by_status(self, status: TaskStatus | str = "all") -> list[Task]:
        self.refresh_if_needed()
        wanted = status.value if isinstance(status, TaskStatus) else status
        return [
            self._task_at(position)
            for position, record in enumerate(self._records)
            if wanted == "all" or record.get("status") == wanted
        ]

    def pending_count(self) -> int:
        self.refresh_if_needed()
        return self._status_counts.get(TaskStatus.PENDING.value, 0)

    def batch(self, task_ids: Iterable[str]) -> BatchResult:
        self.refresh_if_needed()
        result = BatchResult()
        for task_id in task_ids:
            position = self._index.get(task_id)
            if position is None:
                result.missing.append(task_id)
            elif task_id not in result.found:
                result.found[task_id] = self._task_at(position)
        if result.missing:
            logger.debug("Batch lookup missing %d ids: %s", len(result.missing), result.missing)
        return result

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def cache_stats(self) -> dict[str, Any]:
        return {
            "valid": self._valid,
            "built_at": self._built_at,
            "document_mtime_ns": self._document_signature[0] if self._document_signature else None,
            "ttl": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
            "hit_ratio": self.hit_ratio,
            "cached_tasks": len(self._index),
        }

    def reset_stats(self) -> None:
        self.hits = 0
        self.misses = 0
        logger.info("Cache statistics reset")
