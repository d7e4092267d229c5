"""CLI entrypoint for resume-queue."""

from __future__ import annotations

import logging
from pathlib import Path
import sys
from typing import Annotated

import click
import typer

from . import render
from .config import DEFAULT_QUEUE_DIR, write_default_config_if_missing
from .models import ErrorKind, QueueError, TaskStatus, TaskType
from .service import QueueService

EXIT_CODES = {
    ErrorKind.EMPTY: 3,
    ErrorKind.LOCK_TIMEOUT: 75,
}

STATUS_CHOICE = click.Choice([status.value for status in TaskStatus])
TYPE_CHOICE = click.Choice([task_type.value for task_type in TaskType])

QueueDirOption = Annotated[
    Path,
    typer.Option("--queue-dir", envvar="TASK_QUEUE_DIR", help="Queue directory"),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Emit JSON")]

app = typer.Typer(
    help="Task queue for resuming interrupted CLI sessions",
    no_args_is_help=True,
)


def _can_render_rich_output() -> bool:
    return sys.stdout.isatty()


def _print_rich(renderable) -> None:
    from rich.console import Console

    Console().print(renderable)


def _warn_config(message: str) -> None:
    typer.echo(f"Warning: {message}", err=True)


def _service(queue_dir: Path) -> QueueService:
    svc = QueueService(queue_dir, warn=_warn_config)
    svc.ensure_layout()
    return svc


def _run_and_handle(fn) -> None:
    try:
        fn()
    except QueueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_CODES.get(exc.kind, 1)) from exc


def _parse_meta(pairs: list[str]) -> dict[str, str]:
    metadata: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--meta")
        metadata[key.strip()] = value
    return metadata


@app.callback()
def root_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    """Manage the task queue consumed by the session monitor."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("init")
def init_cmd(queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR) -> None:
    """Create the queue directory layout, config and an empty document."""

    def _inner() -> None:
        svc = _service(queue_dir)
        if write_default_config_if_missing(svc.queue_dir, svc.config):
            typer.echo(f"Wrote default config: {svc.queue_dir / 'config.yaml'}")
        count = svc.load()
        typer.echo(f"Queue ready at {svc.store.queue_file} ({count} tasks)")

    _run_and_handle(_inner)


@app.command("add")
def add_cmd(
    task_type: Annotated[str, typer.Option("--type", click_type=TYPE_CHOICE)] = TaskType.CUSTOM.value,
    priority: Annotated[int, typer.Option("--priority", "-p", help="1 (highest) to 10")] = 5,
    task_id: Annotated[str | None, typer.Option("--id", help="Explicit task id")] = None,
    title: Annotated[str | None, typer.Option("--title")] = None,
    description: Annotated[str | None, typer.Option("--description")] = None,
    command: Annotated[str | None, typer.Option("--command", help="Command sent to the session")] = None,
    number: Annotated[int | None, typer.Option("--number", help="GitHub issue/PR number")] = None,
    label: Annotated[list[str], typer.Option("--label", help="Can be repeated")] = [],
    timeout: Annotated[int | None, typer.Option("--timeout", help="Seconds")] = None,
    meta: Annotated[list[str], typer.Option("--meta", help="KEY=VALUE, can be repeated")] = [],
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Enqueue a task."""

    def _inner() -> None:
        svc = _service(queue_dir)
        new_id = svc.add_task(
            task_type,
            priority,
            task_id,
            title=title,
            description=description,
            command=command,
            github_number=number,
            labels=label,
            timeout=timeout,
            metadata=_parse_meta(meta),
        )
        typer.echo(f"Added: {new_id}")

    _run_and_handle(_inner)


@app.command("issue")
def issue_cmd(
    number: Annotated[int, typer.Argument(help="GitHub issue number")],
    priority: Annotated[int, typer.Option("--priority", "-p")] = 5,
    title: Annotated[str | None, typer.Option("--title")] = None,
    label: Annotated[list[str], typer.Option("--label", help="Can be repeated")] = [],
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Enqueue a GitHub issue task."""

    def _inner() -> None:
        new_id = _service(queue_dir).add_github_issue(number, priority, title, label)
        typer.echo(f"Added: {new_id}")

    _run_and_handle(_inner)


@app.command("pr")
def pr_cmd(
    number: Annotated[int, typer.Argument(help="GitHub pull request number")],
    priority: Annotated[int, typer.Option("--priority", "-p")] = 5,
    title: Annotated[str | None, typer.Option("--title")] = None,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Enqueue a GitHub pull request task."""

    def _inner() -> None:
        new_id = _service(queue_dir).add_github_pr(number, priority, title)
        typer.echo(f"Added: {new_id}")

    _run_and_handle(_inner)


@app.command("remove")
def remove_cmd(
    task_id: Annotated[str, typer.Argument(help="Task id")],
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Remove a task from the queue."""

    def _inner() -> None:
        _service(queue_dir).remove_task(task_id)
        typer.echo(f"Removed: {task_id}")

    _run_and_handle(_inner)


@app.command("next")
def next_cmd(
    status: Annotated[str, typer.Option("--status", click_type=STATUS_CHOICE)] = TaskStatus.PENDING.value,
    claim: Annotated[bool, typer.Option("--claim", help="Mark the pending task in_progress")] = False,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Print the id of the next task to run."""

    def _inner() -> None:
        svc = _service(queue_dir)
        if claim:
            if status != TaskStatus.PENDING.value:
                raise typer.BadParameter("--claim only applies to pending tasks", param_hint="--status")
            typer.echo(svc.claim_next())
        else:
            typer.echo(svc.next_task(status))

    _run_and_handle(_inner)


@app.command("status")
def status_cmd(
    task_id: Annotated[str, typer.Argument(help="Task id")],
    new_status: Annotated[str, typer.Argument(click_type=STATUS_CHOICE, help="Target status")],
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Move a task to a new status."""

    def _inner() -> None:
        _service(queue_dir).update_status(task_id, new_status)
        typer.echo(f"{task_id}: {new_status}")

    _run_and_handle(_inner)


@app.command("priority")
def priority_cmd(
    task_id: Annotated[str, typer.Argument(help="Task id")],
    priority: Annotated[int, typer.Argument(help="1 (highest) to 10")],
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Change a task's priority."""

    def _inner() -> None:
        if _service(queue_dir).update_priority(task_id, priority):
            typer.echo(f"{task_id}: priority {priority}")
        else:
            typer.echo(f"{task_id}: priority already {priority}")

    _run_and_handle(_inner)


@app.command("retry")
def retry_cmd(
    task_id: Annotated[str, typer.Argument(help="Task id")],
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Requeue a failed or timed-out task, consuming one retry."""

    def _inner() -> None:
        svc = _service(queue_dir)
        count = svc.retry_task(task_id)
        task = svc.get_task(task_id)
        typer.echo(f"Requeued: {task_id} (retry {count}/{task.max_retries})")

    _run_and_handle(_inner)


@app.command("fail")
def fail_cmd(
    task_id: Annotated[str, typer.Argument(help="Task id")],
    message: Annotated[str, typer.Argument(help="Error message")],
    code: Annotated[int, typer.Option("--code", help="Exit code of the failed run")] = 1,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Record an error for a task and mark it failed."""

    def _inner() -> None:
        svc = _service(queue_dir)
        svc.record_error(task_id, message, code)
        eligible = svc.check_retry_eligible(task_id)
        typer.echo(f"Failed: {task_id} ({'retry available' if eligible else 'no retries left'})")

    _run_and_handle(_inner)


@app.command("list")
def list_cmd(
    status: Annotated[
        str | None,
        typer.Argument(click_type=STATUS_CHOICE, help="Optional status filter", show_default=False),
    ] = None,
    as_json: JsonOption = False,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """List tasks sorted by priority and creation time."""

    def _inner() -> None:
        tasks = _service(queue_dir).list_tasks(status)
        if as_json:
            typer.echo(render.render_task_list_json(tasks))
        elif _can_render_rich_output():
            _print_rich(render.render_task_list_rich(tasks))
        else:
            typer.echo(render.render_task_list_plain(tasks))

    _run_and_handle(_inner)


@app.command("show")
def show_cmd(
    task_id: Annotated[str, typer.Argument(help="Task id")],
    as_json: JsonOption = False,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Show one task."""

    def _inner() -> None:
        task = _service(queue_dir).get_task(task_id)
        if as_json:
            typer.echo(render.render_task_detail_json(task))
        else:
            typer.echo(render.render_task_detail_plain(task))

    _run_and_handle(_inner)


@app.command("stats")
def stats_cmd(
    as_json: JsonOption = False,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Show queue statistics."""

    def _inner() -> None:
        stats = _service(queue_dir).stats()
        if as_json:
            typer.echo(render.render_stats_json(stats))
        else:
            typer.echo(render.render_stats_plain(stats))

    _run_and_handle(_inner)


@app.command("clear")
def clear_cmd(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
    no_backup: Annotated[bool, typer.Option("--no-backup", help="Skip the safety backup")] = False,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Remove every task from the queue."""

    def _inner() -> None:
        svc = _service(queue_dir)
        if not yes:
            typer.confirm("Remove all tasks from the queue?", abort=True)
        count = svc.clear(backup=not no_backup)
        typer.echo(f"Queue cleared: removed {count} tasks")

    _run_and_handle(_inner)


@app.command("backup")
def backup_cmd(
    suffix: Annotated[str | None, typer.Option("--suffix", help="Backup name suffix")] = None,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Snapshot the queue document into the backups directory."""

    def _inner() -> None:
        path = _service(queue_dir).create_backup(suffix)
        if path is None:
            typer.echo("No queue file to back up.")
        else:
            typer.echo(f"Backup created: {path}")

    _run_and_handle(_inner)


@app.command("restore")
def restore_cmd(
    backup_file: Annotated[Path, typer.Argument(help="Backup file path or name")],
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Replace the queue document with a backup."""

    def _inner() -> None:
        count = _service(queue_dir).restore_from_backup(backup_file)
        typer.echo(f"Restored {count} tasks from {backup_file}")

    _run_and_handle(_inner)


@app.command("backups")
def backups_cmd(
    as_json: JsonOption = False,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """List available backups."""

    def _inner() -> None:
        backups = _service(queue_dir).list_backups()
        if as_json:
            typer.echo(render.render_backups_json(backups))
        else:
            typer.echo(render.render_backups_plain(backups))

    _run_and_handle(_inner)


@app.command("cleanup")
def cleanup_cmd(
    days: Annotated[int | None, typer.Option("--days", help="Finished-task retention in days")] = None,
    backup_days: Annotated[int | None, typer.Option("--backup-days", help="Backup retention in days")] = None,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Remove old finished tasks, old backups, stale locks and orphaned temp files."""

    def _inner() -> None:
        report = _service(queue_dir).run_maintenance(task_days=days, backup_days=backup_days)
        for key, value in report.to_dict().items():
            typer.echo(f"{key}: {value}")

    _run_and_handle(_inner)


@app.command("validate")
def validate_cmd(queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR) -> None:
    """Check the queue document and task records."""

    def _inner() -> None:
        problems = _service(queue_dir).validate()
        if problems:
            for problem in problems:
                typer.echo(f"Problem: {problem}", err=True)
            raise typer.Exit(code=1)
        typer.echo("Queue file validation passed.")

    _run_and_handle(_inner)


@app.command("health")
def health_cmd(
    as_json: JsonOption = False,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Report queue health from failures, timeouts, document integrity and stale locks."""

    def _inner() -> None:
        health = _service(queue_dir).health().to_dict()
        if as_json:
            typer.echo(render.render_health_json(health))
        else:
            typer.echo(render.render_health_plain(health))

    _run_and_handle(_inner)


@app.command("lock-info")
def lock_info_cmd(queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR) -> None:
    """Show who holds the queue lock and whether it is stale."""

    def _inner() -> None:
        svc = _service(queue_dir)
        typer.echo(render.render_lock_info_plain(svc.lock_info(), svc.lock.resource))

    _run_and_handle(_inner)


@app.command("unlock")
def unlock_cmd(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
    queue_dir: QueueDirOption = DEFAULT_QUEUE_DIR,
) -> None:
    """Forcibly remove the queue lock (emergency use)."""

    def _inner() -> None:
        svc = _service(queue_dir)
        if not yes:
            typer.confirm("Force-remove the queue lock?", abort=True)
        if svc.force_unlock():
            typer.echo("Lock removed.")
        else:
            typer.echo("No lock to remove.")

    _run_and_handle(_inner)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
