"""Renderers for list, detail, stats and backup command output."""

from __future__ import annotations

import datetime as dt
import json
from typing import Any, Iterable

from .locking import LockInfo
from .models import Task, TaskStatus
from .storage import BackupInfo

STATUS_ORDER = tuple(status.value for status in TaskStatus)
STATUS_LABELS = {
    "pending": "PENDING",
    "in_progress": "IN PROGRESS",
    "completed": "COMPLETED",
    "failed": "FAILED",
    "timeout": "TIMED OUT",
}
LIST_COLUMNS: list[tuple[str, int]] = [
    ("id", 28),
    ("type", 12),
    ("status", 11),
    ("pri", 3),
    ("retries", 7),
    ("created", 16),
    ("title", 36),
]


def _priority_style(priority: int) -> str:
    if priority <= 2:
        return "bold red"
    if priority <= 4:
        return "bold yellow"
    if priority <= 7:
        return "cyan"
    return "dim"


def _status_style(status: str) -> str:
    return {
        "pending": "magenta",
        "in_progress": "cyan",
        "completed": "green",
        "failed": "red",
        "timeout": "yellow",
    }.get(status, "white")


def _short_time(value: str | None) -> str:
    if not value:
        return "-"
    try:
        return dt.datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return value


def _task_list_row(task: Task) -> dict[str, str]:
    return {
        "id": task.id,
        "type": task.type.value,
        "status": task.status.value,
        "pri": str(task.priority),
        "retries": f"{task.retry_count}/{task.max_retries}",
        "created": _short_time(task.created_at),
        "title": task.title or task.description or task.command or "",
    }


def _truncate(value: str, width: int) -> str:
    if width <= 0:
        return ""
    if len(value) <= width:
        return value
    if width == 1:
        return "…"
    return f"{value[: width - 1]}…"


def render_task_list_plain(tasks: Iterable[Task]) -> str:
    rows = [_task_list_row(task) for task in tasks]
    if not rows:
        return "No tasks in queue."

    lines = []
    lines.append("  ".join(name.upper().ljust(width) for name, width in LIST_COLUMNS).rstrip())
    lines.append("  ".join("-" * width for _, width in LIST_COLUMNS))
    for row in rows:
        rendered = [_truncate(row[name], width).ljust(width) for name, width in LIST_COLUMNS]
        lines.append("  ".join(rendered).rstrip())
    return "\n".join(lines)


def render_task_list_rich(tasks: Iterable[Task]):
    from rich import box
    from rich.console import Group
    from rich.table import Table
    from rich.text import Text

    task_list = list(tasks)
    if not task_list:
        return "No tasks in queue."

    by_status: dict[str, list[Task]] = {status: [] for status in STATUS_ORDER}
    for task in task_list:
        by_status[task.status.value].append(task)

    renderables = []
    for status in STATUS_ORDER:
        bucket = by_status[status]
        if not bucket:
            continue
        renderables.append(
            Text(f"{STATUS_LABELS[status]} ({len(bucket)})", style=f"bold {_status_style(status)}")
        )
        table = Table(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold white", pad_edge=False)
        for name, width in LIST_COLUMNS:
            if name == "status":
                continue
            table.add_column(
                name,
                style="bold" if name == "id" else ("dim" if name == "created" else ""),
                min_width=min(width, 8),
                max_width=width,
                overflow="ellipsis",
                no_wrap=True,
            )
        for task in bucket:
            row = _task_list_row(task)
            rendered: list[str | Text] = []
            for name, _ in LIST_COLUMNS:
                if name == "status":
                    continue
                if name == "pri":
                    rendered.append(Text(row[name], style=_priority_style(task.priority)))
                else:
                    rendered.append(row[name])
            table.add_row(*rendered)
        renderables.append(table)
        renderables.append(Text(""))

    if renderables and isinstance(renderables[-1], Text) and not renderables[-1].plain:
        renderables.pop()
    return Group(*renderables)


def render_task_list_json(tasks: Iterable[Task]) -> str:
    return json.dumps([task.to_dict() for task in tasks], indent=2)


def render_task_detail_plain(task: Task) -> str:
    lines = [
        f"id: {task.id}",
        f"type: {task.type.value}",
        f"status: {task.status.value}",
        f"priority: {task.priority}",
        f"retries: {task.retry_count}/{task.max_retries}",
        f"timeout: {task.timeout}s",
        f"created: {task.created_at}",
    ]
    for status in STATUS_ORDER:
        stamp = task.status_times.get(status)
        if stamp and status != "pending":
            lines.append(f"{status}: {stamp}")
    optional = [
        ("github_number", task.github_number),
        ("title", task.title),
        ("description", task.description),
        ("command", task.command),
        ("labels", ", ".join(task.labels) if task.labels else None),
    ]
    lines.extend(f"{name}: {value}" for name, value in optional if value not in (None, ""))
    if task.last_error:
        lines.append(f"last_error: {task.last_error} (code {task.last_error_code}, {task.last_error_time})")
    for key in sorted(task.metadata):
        lines.append(f"metadata.{key}: {task.metadata[key]}")
    return "\n".join(lines)


def render_task_detail_json(task: Task) -> str:
    return json.dumps(task.to_dict(), indent=2)


def render_stats_plain(stats: dict[str, Any]) -> str:
    lines = [
        "=== Queue Statistics ===",
        f"Total Tasks: {stats['total']}",
        f"Pending: {stats['pending']}",
        f"Active: {stats['in_progress']}",
        f"Completed: {stats['completed']}",
        f"Failed: {stats['failed']}",
        f"Timeout: {stats['timeout']}",
    ]
    if "completion_rate" in stats:
        lines.append("")
        lines.append(f"Completion Rate: {stats['completion_rate']}%")
        lines.append(f"Average Completion Time: {stats['average_completion_seconds']:.0f}s")
    return "\n".join(lines)


def render_stats_json(stats: dict[str, Any]) -> str:
    return json.dumps(stats, indent=2)


def render_backups_plain(backups: Iterable[BackupInfo]) -> str:
    rows = list(backups)
    if not rows:
        return "No backups found."
    lines = []
    for backup in rows:
        modified = dt.datetime.fromtimestamp(backup.modified).strftime("%Y-%m-%d %H:%M:%S")
        lines.append(f"{backup.path} ({backup.size_bytes} bytes, modified: {modified})")
    return "\n".join(lines)


def render_backups_json(backups: Iterable[BackupInfo]) -> str:
    return json.dumps([backup.to_dict() for backup in backups], indent=2)


def render_lock_info_plain(info: LockInfo | None, resource: str = "queue") -> str:
    if info is None:
        return f"No lock exists for {resource}"
    age = f"{info.age:.0f}s"
    line = f"Lock for {info.resource}: PID={info.pid or 'unknown'}, Age={age}, File={info.path}"
    if info.stale:
        return f"{line}\n  Status: STALE ({info.reason})"
    return f"{line}\n  Status: ACTIVE"


def render_health_plain(health: dict[str, Any]) -> str:
    metrics = health["metrics"]
    lines = [
        f"Health: {health['level'].upper()}",
        f"  {health['message']}",
        f"Failed: {metrics['failed_tasks']}  Timeout: {metrics['timeout_tasks']}  "
        f"Total: {metrics['total_tasks']}  Stale locks: {metrics['stale_locks']}",
    ]
    return "\n".join(lines)


def render_health_json(health: dict[str, Any]) -> str:
    return json.dumps(health, indent=2)
