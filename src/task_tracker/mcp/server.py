"""MCP server exposing task tracker tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from task_tracker.config import Config, get_config
from task_tracker.core import lifecycle
from task_tracker.core.lifecycle import NotFoundError, ValidationError
from task_tracker.core.offline import OfflineClient, RemoteRejectedError
from task_tracker.core.operations import Operation
from task_tracker.core.queue import MutationQueue, QueueWriteError
from task_tracker.core.sync import SyncCoordinator, SyncMonitor
from task_tracker.db.engine import init_db
from task_tracker.db.models import audit_to_dict, mutation_to_dict, task_to_dict
from task_tracker.integrations.remote import RemoteStore


@dataclass
class AppContext:
    client: OfflineClient
    config: Config
    sync_monitor: SyncMonitor | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the local store and start the periodic sync tick; tear both down on exit."""
    config = get_config()
    db = init_db(config.db_path)
    queue = MutationQueue(config.db_path)
    remote = RemoteStore(config.remote_url, timeout=config.remote_timeout)
    client = OfflineClient(db, queue, remote, forced_offline=config.offline)

    # The tick heals statuses through its own connection, so it can run off-thread.
    ticker = SyncCoordinator(queue, remote, db_path=config.db_path, is_online=client.is_online)
    client.coordinator = ticker
    monitor = SyncMonitor(ticker, interval=config.sync_interval)
    monitor.start()

    try:
        yield AppContext(client=client, config=config, sync_monitor=monitor)
    finally:
        monitor.stop()
        remote.close()
        db.close()


mcp = FastMCP("task-tracker", lifespan=app_lifespan)


def _client(ctx: Context) -> OfflineClient:
    return ctx.request_context.lifespan_context.client


def _apply(ctx: Context, task_id: str | None, operation: Operation) -> dict:
    client = _client(ctx)
    try:
        task = client.apply_operation(task_id, operation)
    except RemoteRejectedError as e:
        return {"error": f"Saved locally, but the remote store rejected it: {e}"}
    except (NotFoundError, ValidationError, QueueWriteError) as e:
        return {"error": str(e)}
    result = task_to_dict(task)
    result["pending_sync"] = client.queue.size()
    return result


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    estimated_days: int,
    category: str | None = None,
    priority: str | None = None,
    notes: str | None = None,
) -> dict:
    """Create a task starting now. Priority: Low, Medium (default) or High."""
    op = Operation.create(
        title, category=category, priority=priority, estimated_days=estimated_days, notes=notes
    )
    return _apply(ctx, None, op)


@mcp.tool()
def list_tasks(
    ctx: Context,
    status: str | None = None,
    category: str | None = None,
    search: str | None = None,
    include_archived: bool = False,
) -> list[dict]:
    """List tasks. Status: On Track, Delayed, Completed On Time, Completed Late."""
    tasks = lifecycle.list_tasks(
        _client(ctx).db,
        status=status,
        category=category,
        search=search,
        include_archived=include_archived,
    )
    return [task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its audit history."""
    db = _client(ctx).db
    try:
        task = lifecycle.get_task(db, task_id)
    except NotFoundError as e:
        return {"error": str(e)}
    result = task_to_dict(task)
    result["audit"] = [audit_to_dict(e) for e in lifecycle.get_history(db, task_id)]
    return result


@mcp.tool()
def edit_task(
    ctx: Context,
    task_id: str,
    title: str | None = None,
    notes: str | None = None,
    category: str | None = None,
    priority: str | None = None,
    estimated_days: int | None = None,
    assignee: str | None = None,
    archived: bool | None = None,
) -> dict:
    """Edit a task. Changing estimated_days recomputes the due date from the start date."""
    fields = {
        "title": title,
        "notes": notes,
        "category": category,
        "priority": priority,
        "estimated_days": estimated_days,
        "assignee": assignee,
        "archived": archived,
    }
    fields = {k: v for k, v in fields.items() if v is not None}
    return _apply(ctx, task_id, Operation.edit(**fields))


@mcp.tool()
def complete_task(ctx: Context, task_id: str) -> dict:
    """Mark a task completed now."""
    return _apply(ctx, task_id, Operation.complete())


@mcp.tool()
def reopen_task(ctx: Context, task_id: str) -> dict:
    """Reopen a completed task."""
    return _apply(ctx, task_id, Operation.reopen())


@mcp.tool()
def extend_task(ctx: Context, task_id: str, add_days: int) -> dict:
    """Push a task's deadline out by add_days (at least 1)."""
    return _apply(ctx, task_id, Operation.extend(add_days))


# ── Sync Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def sync_now(ctx: Context) -> dict:
    """Replay queued changes against the remote store."""
    result = _client(ctx).flush()
    return {
        "online": result.online,
        "attempted": result.attempted,
        "succeeded": result.succeeded,
        "failed": result.failed,
        "remaining": result.remaining,
    }


@mcp.tool()
def queue_status(ctx: Context) -> dict:
    """Show changes waiting to sync."""
    pending = _client(ctx).pending()
    return {"size": len(pending), "pending": [mutation_to_dict(m) for m in pending]}
