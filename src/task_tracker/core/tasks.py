"""Task persistence: rows in, dataclasses out.

These functions do not commit; callers group a task write and its audit
entry into one transaction.
"""

import json
import sqlite3
from datetime import datetime

from task_tracker.core.status import ensure_utc, utcnow
from task_tracker.db.models import AuditEntry, Task

UPDATABLE_FIELDS = {
    "title",
    "notes",
    "category",
    "priority",
    "archived",
    "assignee",
    "estimated_days",
    "due_at",
    "completed_at",
    "status",
}


def insert_task(db: sqlite3.Connection, task: Task) -> Task:
    """Insert a new task row."""
    now = _fmt_dt(utcnow())
    db.execute(
        """INSERT INTO tasks (id, title, notes, category, priority, start_at,
                              estimated_days, due_at, completed_at, status,
                              archived, assignee, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task.id,
            task.title,
            task.notes,
            task.category,
            task.priority,
            _fmt_dt(task.start_at),
            task.estimated_days,
            _fmt_dt(task.due_at),
            _fmt_dt(task.completed_at),
            task.status,
            int(task.archived),
            task.assignee,
            now,
            now,
        ),
    )
    return get_task(db, task.id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def task_exists(db: sqlite3.Connection, task_id: str) -> bool:
    row = db.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return row is not None


def list_tasks(
    db: sqlite3.Connection,
    search: str | None = None,
    category: str | None = None,
    priority: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    include_archived: bool = False,
) -> list[Task]:
    """List tasks with optional filters, newest first."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if not include_archived:
        query += " AND archived = 0"

    if search:
        query += " AND (LOWER(title) LIKE ? OR LOWER(COALESCE(notes, '')) LIKE ?)"
        pattern = f"%{search.lower()}%"
        params.extend([pattern, pattern])

    if category:
        query += " AND category = ?"
        params.append(category)

    if priority:
        query += " AND priority = ?"
        params.append(priority)

    rows = db.execute(query + " ORDER BY created_at DESC, rowid DESC", params).fetchall()
    tasks = [_row_to_task(r) for r in rows]

    # start_at is compared as a datetime, not as text, since offsets may differ
    if date_from is not None:
        lower = ensure_utc(date_from)
        tasks = [t for t in tasks if t.start_at >= lower]
    if date_to is not None:
        upper = ensure_utc(date_to)
        tasks = [t for t in tasks if t.start_at <= upper]
    return tasks


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task | None:
    """Update task columns. Returns the updated task, or None if unknown."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
    if not task_exists(db, task_id):
        return None
    if not fields:
        return get_task(db, task_id)

    values = []
    for key, value in fields.items():
        if isinstance(value, datetime):
            value = _fmt_dt(value)
        elif key == "archived":
            value = int(bool(value))
        values.append(value)

    set_parts = [f"{k} = ?" for k in fields]
    set_parts.append("updated_at = ?")
    values.extend([_fmt_dt(utcnow()), task_id])
    db.execute(f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?", values)
    return get_task(db, task_id)


def append_audit_entry(
    db: sqlite3.Connection,
    task_id: str,
    action: str,
    meta: dict | None = None,
    created_at: datetime | None = None,
) -> AuditEntry:
    """Append an audit entry for a task."""
    cur = db.execute(
        "INSERT INTO audit_entries (task_id, action, meta, created_at) VALUES (?, ?, ?, ?)",
        (
            task_id,
            action,
            json.dumps(meta) if meta is not None else None,
            _fmt_dt(created_at or utcnow()),
        ),
    )
    row = db.execute("SELECT * FROM audit_entries WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_audit(row)


def get_audit_entries(db: sqlite3.Connection, task_id: str) -> list[AuditEntry]:
    """Get the audit trail for a task, oldest first."""
    rows = db.execute(
        "SELECT * FROM audit_entries WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [_row_to_audit(r) for r in rows]


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        notes=row["notes"],
        category=row["category"],
        priority=row["priority"],
        start_at=_parse_dt(row["start_at"]),
        estimated_days=row["estimated_days"],
        due_at=_parse_dt(row["due_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        status=row["status"],
        archived=bool(row["archived"]),
        assignee=row["assignee"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_audit(row: sqlite3.Row) -> AuditEntry:
    return AuditEntry(
        id=row["id"],
        task_id=row["task_id"],
        action=row["action"],
        meta=json.loads(row["meta"]) if row["meta"] else None,
        created_at=_parse_dt(row["created_at"]),
    )


def _fmt_dt(val: datetime | None) -> str | None:
    if val is None:
        return None
    return ensure_utc(val).isoformat()


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return ensure_utc(datetime.fromisoformat(val))
