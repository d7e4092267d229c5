"""Cross-process queue lock with owner liveness and age-based staleness.

The lock itself is ``<resource>.lock``, a small JSON owner record (pid, host,
token, acquisition time). Every inspection or change of that record happens
while holding an ``flock`` on the sibling ``<resource>.lock.guard`` file, so
"check whether stale, then claim" is a single atomic step across processes.
The guard is held only for that step; the kernel drops it if a process dies.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import fcntl
import json
import logging
import os
from pathlib import Path
import socket
import time
from typing import Any, Callable, Iterator, TypeVar
import uuid

from .models import LockStaleError, LockTimeoutError, QueueIOError

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
GUARD_SUFFIX = ".guard"
DEFAULT_RESOURCE = "queue"
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_AGE = 300.0
RETRY_INTERVAL = 0.1

T = TypeVar("T")


def is_pid_alive(pid: int) -> bool:
    """Check if a process is still running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by another user
    except OSError:
        return False


@dataclass(slots=True)
class LockInfo:
    resource: str
    path: Path
    pid: int | None
    host: str | None
    token: str | None
    acquired_at: float | None
    age: float
    owner_alive: bool | None
    stale: bool
    reason: str | None = None

    @property
    def state(self) -> str:
        return "stale" if self.stale else "held"

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "file": str(self.path),
            "pid": self.pid,
            "host": self.host,
            "acquired_at": self.acquired_at,
            "age_seconds": round(self.age, 3),
            "owner_alive": self.owner_alive,
            "state": self.state,
            "reason": self.reason,
        }


def lock_path(lock_dir: Path, resource: str = DEFAULT_RESOURCE) -> Path:
    return Path(lock_dir) / f"{resource}{LOCK_SUFFIX}"


def read_lock_info(
    path: Path,
    max_age: float = DEFAULT_MAX_AGE,
    now: float | None = None,
) -> LockInfo | None:
    now = time.time() if now is None else now
    resource = path.name[: -len(LOCK_SUFFIX)] if path.name.endswith(LOCK_SUFFIX) else path.name
    try:
        raw = path.read_text(encoding="utf-8")
        mtime = path.stat().st_mtime
    except FileNotFoundError:
        return None

    try:
        record = json.loads(raw)
        if not isinstance(record, dict):
            raise ValueError("owner record is not an object")
        pid = int(record["pid"])
        acquired_at = float(record["acquired_at"])
    except (KeyError, TypeError, ValueError):
        return LockInfo(
            resource=resource,
            path=path,
            pid=None,
            host=None,
            token=None,
            acquired_at=None,
            age=max(0.0, now - mtime),
            owner_alive=None,
            stale=True,
            reason="unreadable owner record",
        )

    host = record.get("host")
    age = max(0.0, now - acquired_at)
    owner_alive: bool | None = None
    reason = None
    if host in (None, socket.gethostname()):
        owner_alive = is_pid_alive(pid)
        if not owner_alive:
            reason = f"owner process {pid} is not running"
    if reason is None and age > max_age:
        reason = f"lock age {age:.0f}s exceeds {max_age:.0f}s"
    return LockInfo(
        resource=resource,
        path=path,
        pid=pid,
        host=host,
        token=record.get("token"),
        acquired_at=acquired_at,
        age=age,
        owner_alive=owner_alive,
        stale=reason is not None,
        reason=reason,
    )


@contextmanager
def _guarded(path: Path) -> Iterator[None]:
    guard = path.with_name(path.name + GUARD_SUFFIX)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(guard, os.O_CREAT | os.O_RDWR, 0o644)
    except OSError as exc:
        raise QueueIOError(f"Failed to open lock guard {guard}: {exc}") from exc
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


class QueueLock:
    """Named, re-entrant lock shared by cooperating processes on one host."""

    def __init__(
        self,
        lock_dir: Path,
        resource: str = DEFAULT_RESOURCE,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_age: float = DEFAULT_MAX_AGE,
        retry_interval: float = RETRY_INTERVAL,
    ) -> None:
        self.lock_dir = Path(lock_dir)
        self.resource = resource
        self.timeout = timeout
        self.max_age = max_age
        self.retry_interval = retry_interval
        self._token = uuid.uuid4().hex
        self._depth = 0

    @property
    def path(self) -> Path:
        return lock_path(self.lock_dir, self.resource)

    @property
    def held(self) -> bool:
        return self._depth > 0

    def info(self) -> LockInfo | None:
        return read_lock_info(self.path, self.max_age)

    def _write_owner(self) -> None:
        record = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "token": self._token,
            "acquired_at": time.time(),
        }
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(record), encoding="utf-8")
        os.replace(tmp, self.path)

    def _try_claim(self, reclaim_stale: bool) -> tuple[bool, LockInfo | None]:
        with _guarded(self.path):
            holder = read_lock_info(self.path, self.max_age)
            if holder is not None and not holder.stale:
                return False, holder
            if holder is not None:
                if not reclaim_stale:
                    raise LockStaleError(
                        f"Lock for {self.resource} is stale ({holder.reason})", holder=holder
                    )
                logger.warning(
                    "Reclaiming stale lock for %s held by pid %s (%s)",
                    self.resource,
                    holder.pid,
                    holder.reason,
                )
            try:
                self._write_owner()
            except OSError as exc:
                raise QueueIOError(f"Failed to write lock file {self.path}: {exc}") from exc
            return True, holder

    def acquire(self, timeout: float | None = None, *, reclaim_stale: bool = True) -> bool:
        """Take the lock, waiting up to ``timeout`` seconds.

        Returns True when a stale lock left by a dead or expired owner was
        reclaimed, False for a normal acquisition. Raises ``LockTimeoutError``
        when the lock stays busy.
        """
        if self._depth:
            self._depth += 1
            return False
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        attempts = 0
        while True:
            attempts += 1
            claimed, holder = self._try_claim(reclaim_stale)
            if claimed:
                self._depth = 1
                logger.debug("Acquired lock for %s (attempt %d)", self.resource, attempts)
                return holder is not None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                owner = f"pid {holder.pid}" if holder and holder.pid else "another process"
                raise LockTimeoutError(
                    f"Failed to acquire lock for {self.resource} after {attempts} attempts "
                    f"(timeout: {timeout:g}s, held by {owner})",
                    holder=holder,
                )
            time.sleep(min(self.retry_interval, remaining))

    def release(self) -> bool:
        """Release one level of the lock. Safe to call when not held."""
        if self._depth == 0:
            logger.debug("Release of %s lock ignored: not held", self.resource)
            return False
        self._depth -= 1
        if self._depth:
            return True
        with _guarded(self.path):
            holder = read_lock_info(self.path, self.max_age)
            if holder is None or holder.token != self._token:
                logger.warning("Lock for %s was no longer owned by this process", self.resource)
                return True
            self.path.unlink(missing_ok=True)
        logger.debug("Released lock for %s", self.resource)
        return True

    @contextmanager
    def hold(self, timeout: float | None = None, *, reclaim_stale: bool = True) -> Iterator["QueueLock"]:
        self.acquire(timeout, reclaim_stale=reclaim_stale)
        try:
            yield self
        finally:
            self.release()

    def with_lock(self, fn: Callable[[], T], timeout: float | None = None) -> T:
        with self.hold(timeout):
            return fn()

    def __enter__(self) -> "QueueLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def list_locks(lock_dir: Path, max_age: float = DEFAULT_MAX_AGE) -> list[LockInfo]:
    lock_dir = Path(lock_dir)
    if not lock_dir.is_dir():
        return []
    infos = []
    for path in sorted(lock_dir.glob(f"*{LOCK_SUFFIX}")):
        info = read_lock_info(path, max_age)
        if info is not None:
            infos.append(info)
    return infos


def cleanup_stale_locks(lock_dir: Path, max_age: float = DEFAULT_MAX_AGE) -> int:
    cleaned = 0
    for info in list_locks(lock_dir, max_age):
        with _guarded(info.path):
            current = read_lock_info(info.path, max_age)
            if current is None or not current.stale:
                continue
            logger.info("Cleaning up stale lock: %s (%s)", info.path, current.reason)
            info.path.unlink(missing_ok=True)
            cleaned += 1
    return cleaned


def force_unlock(lock_dir: Path, resource: str = DEFAULT_RESOURCE) -> bool:
    path = lock_path(lock_dir, resource)
    with _guarded(path):
        if not path.exists():
            logger.info("No lock to clean for %s", resource)
            return False
        logger.warning("Force cleaning lock for %s", resource)
        path.unlink()
    return True
