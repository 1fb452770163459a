"""Task lifecycle: domain operations that keep status and audit trail in step.

Every write that touches ``due_at`` or ``completed_at`` persists the
re-derived status in the same commit, and every read heals a stale cached
status before returning.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta

from task_tracker.core import tasks as store
from task_tracker.core.operations import Operation
from task_tracker.core.status import derive_status, ensure_utc, utcnow
from task_tracker.db.models import AuditEntry, Task

logger = logging.getLogger(__name__)

PRIORITIES = ("Low", "Medium", "High")
EDITABLE_FIELDS = {"title", "notes", "category", "priority", "archived", "assignee", "estimated_days"}


class ValidationError(ValueError):
    """Raised when an operation's input is invalid. Never queued or retried."""


class NotFoundError(LookupError):
    """Raised when a task id is unknown."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


# ── Validation ───────────────────────────────────────────────────────────────


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_title(title) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Title must not be empty")
    return title


def _check_estimate(estimated_days) -> int:
    if not _is_int(estimated_days) or estimated_days < 0:
        raise ValidationError(
            f"estimated_days must be a non-negative integer, got {estimated_days!r}"
        )
    return estimated_days


def _check_priority(priority) -> str:
    if priority not in PRIORITIES:
        raise ValidationError(
            f"priority must be one of {', '.join(PRIORITIES)}, got {priority!r}"
        )
    return priority


def _check_text(name: str, value) -> None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{name} must be a string, got {type(value).__name__}")


def _require(db: sqlite3.Connection, task_id: str) -> Task:
    task = store.get_task(db, task_id)
    if not task:
        raise NotFoundError(task_id)
    return task


# ── Operations ───────────────────────────────────────────────────────────────


def create_task(
    db: sqlite3.Connection,
    title: str,
    category: str | None = None,
    priority: str | None = None,
    estimated_days: int = 0,
    start_at: datetime | None = None,
    notes: str | None = None,
    task_id: str | None = None,
    meta: dict | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> Task:
    """Create a task. ``start_at`` defaults to now; ``due_at`` is derived."""
    now = ensure_utc(now) if now else utcnow()
    _check_title(title)
    _check_estimate(estimated_days)
    priority = _check_priority(priority or "Medium")
    for name, value in (("notes", notes), ("category", category), ("id", task_id)):
        _check_text(name, value)
    if task_id is not None and store.task_exists(db, task_id):
        raise ValidationError(f"Task already exists: {task_id}")

    start_at = ensure_utc(start_at) if start_at else now
    due_at = start_at + timedelta(days=estimated_days)
    task = Task(
        id=task_id or uuid.uuid4().hex,
        title=title,
        notes=notes,
        category=category or "General",
        priority=priority,
        start_at=start_at,
        estimated_days=estimated_days,
        due_at=due_at,
        completed_at=None,
        status=derive_status(due_at, None, now).value,
    )

    created = store.insert_task(db, task)
    store.append_audit_entry(db, created.id, "created", meta, created_at=now)
    if commit:
        db.commit()
    logger.debug("Created task %s (due %s)", created.id, created.due_at.isoformat())
    return created


def edit_task(
    db: sqlite3.Connection,
    task_id: str,
    now: datetime | None = None,
    commit: bool = True,
    **fields,
) -> Task:
    """Partially update a task's mutable fields.

    A changed estimate recomputes ``due_at`` from the existing ``start_at``,
    which also discards any earlier deadline extension.
    """
    now = ensure_utc(now) if now else utcnow()
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot edit fields: {', '.join(sorted(unknown))}")
    for name in ("notes", "category", "assignee"):
        _check_text(name, fields.get(name))
    if "title" in fields:
        _check_title(fields["title"])
    if "estimated_days" in fields:
        _check_estimate(fields["estimated_days"])
    if "priority" in fields:
        _check_priority(fields["priority"])
    if "archived" in fields and not isinstance(fields["archived"], bool):
        raise ValidationError("archived must be a boolean")
    if "category" in fields and not fields["category"]:
        raise ValidationError("category must not be empty")

    task = _require(db, task_id)

    changes = {k: v for k, v in fields.items() if getattr(task, k) != v}
    if not changes:
        return _heal(db, task, now, commit=commit)

    meta: dict = {"fields": sorted(changes)}
    if "estimated_days" in changes:
        due_at = task.start_at + timedelta(days=changes["estimated_days"])
        changes["due_at"] = due_at
        changes["status"] = derive_status(due_at, task.completed_at, now).value
        meta["estimated_days"] = changes["estimated_days"]

    updated = store.update_task(db, task_id, **changes)
    store.append_audit_entry(db, task_id, "edited", meta, created_at=now)
    if commit:
        db.commit()
    return _heal(db, updated, now, commit=commit)


def complete_task(
    db: sqlite3.Connection,
    task_id: str,
    completed_at: datetime | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> Task:
    """Mark a task completed at ``completed_at`` (default: now).

    Completing an already completed task re-stamps ``completed_at``.
    """
    now = ensure_utc(now) if now else utcnow()
    completed_at = ensure_utc(completed_at) if completed_at else now
    task = _require(db, task_id)

    status = derive_status(task.due_at, completed_at, now)
    updated = store.update_task(
        db, task_id, completed_at=completed_at, status=status.value
    )
    store.append_audit_entry(db, task_id, "completed", created_at=now)
    if commit:
        db.commit()
    return updated


def reopen_task(
    db: sqlite3.Connection,
    task_id: str,
    now: datetime | None = None,
    commit: bool = True,
) -> Task:
    """Clear completion; status falls back to On Track or Delayed."""
    now = ensure_utc(now) if now else utcnow()
    task = _require(db, task_id)

    status = derive_status(task.due_at, None, now)
    updated = store.update_task(db, task_id, completed_at=None, status=status.value)
    store.append_audit_entry(db, task_id, "reopened", created_at=now)
    if commit:
        db.commit()
    return updated


def extend_task(
    db: sqlite3.Connection,
    task_id: str,
    add_days: int,
    due_at: datetime | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> Task:
    """Push the deadline out by ``add_days`` from the current due date.

    A replayed extension carries the resulting ``due_at`` so that replaying
    it does not shift the deadline relative to whatever the store holds.
    """
    now = ensure_utc(now) if now else utcnow()
    if not _is_int(add_days) or add_days < 1:
        raise ValidationError(f"add_days must be an integer >= 1, got {add_days!r}")
    task = _require(db, task_id)

    new_due = ensure_utc(due_at) if due_at else task.due_at + timedelta(days=add_days)
    status = derive_status(new_due, task.completed_at, now)
    updated = store.update_task(db, task_id, due_at=new_due, status=status.value)
    store.append_audit_entry(
        db, task_id, "extended_deadline", {"add_days": add_days}, created_at=now
    )
    if commit:
        db.commit()
    return updated


# ── Reads ────────────────────────────────────────────────────────────────────


def _heal(db: sqlite3.Connection, task: Task, now: datetime, commit: bool = True) -> Task:
    """Recompute the cached status and correct the store if it drifted."""
    status = derive_status(task.due_at, task.completed_at, now).value
    if status == task.status:
        return task
    logger.debug("Healing status of %s: %s -> %s", task.id, task.status, status)
    healed = store.update_task(db, task.id, status=status)
    if commit:
        db.commit()
    return healed


def get_task(
    db: sqlite3.Connection,
    task_id: str,
    now: datetime | None = None,
) -> Task:
    """Get a task with its status recomputed against now."""
    now = ensure_utc(now) if now else utcnow()
    return _heal(db, _require(db, task_id), now)


def list_tasks(
    db: sqlite3.Connection,
    status: str | None = None,
    now: datetime | None = None,
    **filters,
) -> list[Task]:
    """List tasks, healing each cached status before filtering on it."""
    now = ensure_utc(now) if now else utcnow()
    tasks = [_heal(db, t, now) for t in store.list_tasks(db, **filters)]
    if status:
        tasks = [t for t in tasks if t.status == status]
    return tasks


def refresh_statuses(
    db: sqlite3.Connection,
    now: datetime | None = None,
) -> list[Task]:
    """Heal every stored task, archived ones included. Returns those that changed."""
    now = ensure_utc(now) if now else utcnow()
    changed = []
    for task in store.list_tasks(db, include_archived=True):
        healed = _heal(db, task, now)
        if healed.status != task.status:
            changed.append(healed)
    if changed:
        logger.info("Refreshed status of %d task(s)", len(changed))
    return changed


def get_history(db: sqlite3.Connection, task_id: str) -> list[AuditEntry]:
    """Audit trail of a task, oldest first."""
    _require(db, task_id)
    return store.get_audit_entries(db, task_id)


# ── Dispatch ─────────────────────────────────────────────────────────────────


def apply_operation(
    db: sqlite3.Connection,
    task_id: str | None,
    operation: Operation,
    now: datetime | None = None,
    commit: bool = True,
) -> Task:
    """Apply one domain operation and return the task with corrected status."""
    kind = operation.kind
    fields = dict(operation.fields)

    if kind == "create":
        if task_id is not None:
            fields.setdefault("task_id", task_id)
        return create_task(db, now=now, commit=commit, **fields)

    if task_id is None:
        raise ValidationError(f"{kind} requires a task id")

    if kind == "edit":
        return edit_task(db, task_id, now=now, commit=commit, **fields)
    if kind == "complete":
        return complete_task(
            db, task_id, completed_at=fields.get("completed_at"), now=now, commit=commit
        )
    if kind == "reopen":
        return reopen_task(db, task_id, now=now, commit=commit)
    if kind == "extend":
        return extend_task(
            db, task_id, fields.get("add_days"), due_at=fields.get("due_at"),
            now=now, commit=commit,
        )
    raise ValidationError(f"Unknown operation: {kind}")
