"""Data models for the task tracker."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Task:
    id: str
    title: str
    start_at: datetime
    estimated_days: int
    due_at: datetime
    status: str
    notes: str | None = None
    category: str = "General"
    priority: str = "Medium"
    completed_at: datetime | None = None
    archived: bool = False
    assignee: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class AuditEntry:
    id: int | None = None
    task_id: str = ""
    action: str = ""
    meta: dict | None = None
    created_at: datetime | None = None


@dataclass
class PendingMutation:
    method: str
    path: str
    payload: dict = field(default_factory=dict)
    task_id: str | None = None
    id: int | None = None
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime | None = None


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def task_to_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "notes": task.notes,
        "category": task.category,
        "priority": task.priority,
        "start_at": _iso(task.start_at),
        "estimated_days": task.estimated_days,
        "due_at": _iso(task.due_at),
        "completed_at": _iso(task.completed_at),
        "status": task.status,
        "archived": task.archived,
        "assignee": task.assignee,
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
    }


def audit_to_dict(entry: AuditEntry) -> dict:
    return {
        "id": entry.id,
        "task_id": entry.task_id,
        "action": entry.action,
        "meta": entry.meta,
        "created_at": _iso(entry.created_at),
    }


def mutation_to_dict(mutation: PendingMutation) -> dict:
    return {
        "id": mutation.id,
        "method": mutation.method,
        "path": mutation.path,
        "payload": mutation.payload,
        "task_id": mutation.task_id,
        "attempts": mutation.attempts,
        "last_error": mutation.last_error,
        "created_at": _iso(mutation.created_at),
    }
