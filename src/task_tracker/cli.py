"""CLI entry point for the task tracker."""

import json
import logging
import sys
from contextlib import contextmanager

import click

from task_tracker.config import get_config
from task_tracker.core import lifecycle
from task_tracker.core.lifecycle import NotFoundError, ValidationError
from task_tracker.core.offline import OfflineClient, RemoteRejectedError
from task_tracker.core.operations import Operation
from task_tracker.core.queue import MutationQueue, QueueWriteError
from task_tracker.core.status import Status
from task_tracker.db.engine import get_db
from task_tracker.db.models import task_to_dict
from task_tracker.integrations.remote import RemoteStore

DATETIME_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]

STATUS_ICONS = {
    Status.ON_TRACK.value: "○",
    Status.DELAYED.value: "!",
    Status.COMPLETED_ON_TIME.value: "✓",
    Status.COMPLETED_LATE.value: "✗",
}


@contextmanager
def _get_client(ctx: click.Context):
    config = get_config()
    remote = RemoteStore(config.remote_url, timeout=config.remote_timeout)
    try:
        with get_db(config.db_path) as db:
            yield OfflineClient(
                db,
                MutationQueue(config.db_path),
                remote,
                forced_offline=ctx.obj["offline"] or config.offline,
            )
    finally:
        remote.close()


def _apply(client: OfflineClient, task_id: str | None, operation: Operation):
    """Apply an operation, turning domain errors into CLI errors."""
    try:
        return client.apply_operation(task_id, operation)
    except RemoteRejectedError as e:
        click.echo(f"Saved locally, but the remote store rejected it: {e}", err=True)
        sys.exit(1)
    except NotFoundError:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)
    except (ValidationError, QueueWriteError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _pending_note(client: OfflineClient):
    pending = client.queue.size()
    if pending:
        click.echo(f"  ({pending} change(s) waiting to sync)")


@click.group()
@click.option("--offline", is_flag=True, help="Don't contact the remote store; queue every change")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, offline, verbose):
    """tt - Task Tracker CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["offline"] = offline


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--estimate", "-e", required=True, type=int, help="Estimated days of work")
@click.option("--category", "-c", default=None, help="Category (default: General)")
@click.option(
    "--priority", "-p", default=None,
    type=click.Choice(lifecycle.PRIORITIES), help="Priority (default: Medium)",
)
@click.option("--start", default=None, type=click.DateTime(DATETIME_FORMATS), help="Start date (UTC)")
@click.option("--notes", "-n", default=None, help="Free-form notes")
@click.pass_context
def task_add(ctx, title, estimate, category, priority, start, notes):
    """Create a new task."""
    op = Operation.create(
        title,
        category=category,
        priority=priority,
        estimated_days=estimate,
        start_at=start,
        notes=notes,
    )
    with _get_client(ctx) as client:
        task = _apply(client, None, op)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Due: {task.due_at.isoformat()}")
        click.echo(f"  Status: {task.status}")
        _pending_note(client)


@task_group.command("list")
@click.option("--status", default=None, type=click.Choice([s.value for s in Status]), help="Filter by status")
@click.option("--category", default=None, help="Filter by category")
@click.option("--priority", default=None, type=click.Choice(lifecycle.PRIORITIES), help="Filter by priority")
@click.option("--search", default=None, help="Search title and notes")
@click.option("--all", "include_archived", is_flag=True, help="Include archived tasks")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@click.pass_context
def task_list(ctx, status, category, priority, search, include_archived, json_output):
    """List tasks with freshly computed status."""
    with _get_client(ctx) as client:
        tasks = lifecycle.list_tasks(
            client.db,
            status=status,
            category=category,
            priority=priority,
            search=search,
            include_archived=include_archived,
        )

        if json_output:
            click.echo(json.dumps([task_to_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            icon = STATUS_ICONS.get(task.status, "?")
            archived = " [archived]" if task.archived else ""
            click.echo(
                f"  {icon} {task.id}: {task.title} ({task.status}) "
                f"due {task.due_at:%Y-%m-%d}{archived}"
            )


@task_group.command("show")
@click.argument("task_id")
@click.pass_context
def task_show(ctx, task_id):
    """Show task details and history."""
    with _get_client(ctx) as client:
        try:
            task = lifecycle.get_task(client.db, task_id)
        except NotFoundError:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Category: {task.category}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Start: {task.start_at.isoformat()}")
        click.echo(f"  Estimate: {task.estimated_days} day(s)")
        click.echo(f"  Due: {task.due_at.isoformat()}")
        if task.completed_at:
            click.echo(f"  Completed: {task.completed_at.isoformat()}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")
        if task.notes:
            click.echo(f"  Notes: {task.notes}")
        if task.archived:
            click.echo("  Archived: yes")

        entries = lifecycle.get_history(client.db, task_id)
        if entries:
            click.echo("  History:")
            for e in entries:
                meta = f" {json.dumps(e.meta)}" if e.meta else ""
                click.echo(f"    [{e.created_at.isoformat()}] {e.action}{meta}")


@task_group.command("edit")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--notes", default=None)
@click.option("--category", default=None)
@click.option("--priority", default=None, type=click.Choice(lifecycle.PRIORITIES))
@click.option("--estimate", "-e", default=None, type=int, help="New estimate; recomputes the due date")
@click.option("--assignee", default=None)
@click.option("--archive/--unarchive", default=None, help="Hide from or restore to default listings")
@click.pass_context
def task_edit(ctx, task_id, title, notes, category, priority, estimate, assignee, archive):
    """Edit a task's fields."""
    fields = {
        "title": title,
        "notes": notes,
        "category": category,
        "priority": priority,
        "estimated_days": estimate,
        "assignee": assignee,
        "archived": archive,
    }
    fields = {k: v for k, v in fields.items() if v is not None}
    if not fields:
        click.echo("Nothing to change.", err=True)
        sys.exit(1)

    with _get_client(ctx) as client:
        task = _apply(client, task_id, Operation.edit(**fields))
        click.echo(f"Updated task: {task.id}")
        click.echo(f"  Due: {task.due_at.isoformat()}")
        click.echo(f"  Status: {task.status}")
        _pending_note(client)


@task_group.command("done")
@click.argument("task_id")
@click.pass_context
def task_done(ctx, task_id):
    """Mark a task as completed now."""
    with _get_client(ctx) as client:
        task = _apply(client, task_id, Operation.complete())
        click.echo(f"Completed task: {task.id} ({task.status})")
        _pending_note(client)


@task_group.command("reopen")
@click.argument("task_id")
@click.pass_context
def task_reopen(ctx, task_id):
    """Reopen a completed task."""
    with _get_client(ctx) as client:
        task = _apply(client, task_id, Operation.reopen())
        click.echo(f"Reopened task: {task.id} ({task.status})")
        _pending_note(client)


@task_group.command("extend")
@click.argument("task_id")
@click.argument("days", type=int)
@click.pass_context
def task_extend(ctx, task_id, days):
    """Push a task's deadline out by DAYS."""
    with _get_client(ctx) as client:
        task = _apply(client, task_id, Operation.extend(days))
        click.echo(f"Extended task: {task.id}")
        click.echo(f"  Due: {task.due_at.isoformat()}")
        click.echo(f"  Status: {task.status}")
        _pending_note(client)


# ── Sync Commands ─────────────────────────────────────────────────────────────


@main.command("sync")
@click.pass_context
def sync_command(ctx):
    """Replay queued changes against the remote store."""
    with _get_client(ctx) as client:
        result = client.flush()
        if not result.online:
            click.echo(f"Remote store unreachable; {result.remaining} change(s) still queued.")
            return
        if not result.attempted:
            click.echo("Nothing to sync.")
            return
        click.echo(f"Replayed {result.succeeded} change(s), {result.failed} failed.")
        if result.remaining:
            click.echo(f"  {result.remaining} change(s) still queued")


@main.group("queue")
def queue_group():
    """Inspect the offline change queue."""
    pass


@queue_group.command("list")
@click.pass_context
def queue_list(ctx):
    """List changes waiting to sync, oldest first."""
    with _get_client(ctx) as client:
        pending = client.pending()
        if not pending:
            click.echo("Queue is empty.")
            return
        for m in pending:
            err = f" last error: {m.last_error}" if m.last_error else ""
            click.echo(f"  #{m.id} {m.method} {m.path} (attempts: {m.attempts}){err}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--db", "db_path", default=None, type=click.Path(dir_okay=False), help="Store database path")
def serve_command(host, port, db_path):
    """Run the authoritative task store HTTP API."""
    from pathlib import Path

    from task_tracker.web.app import run_server

    click.echo(f"Serving task store at http://{host}:{port}")
    run_server(host=host, port=port, db_path=Path(db_path) if db_path else None)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from task_tracker.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
