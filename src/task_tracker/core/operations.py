"""Domain operations as values, and their replayable remote form."""

from dataclasses import dataclass, field
from datetime import datetime

from task_tracker.db.models import PendingMutation, Task

OPERATION_KINDS = ("create", "edit", "complete", "reopen", "extend")


@dataclass
class Operation:
    kind: str
    fields: dict = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        title: str,
        category: str | None = None,
        priority: str | None = None,
        estimated_days: int = 0,
        start_at: datetime | None = None,
        notes: str | None = None,
    ) -> "Operation":
        return cls("create", {
            "title": title,
            "category": category,
            "priority": priority,
            "estimated_days": estimated_days,
            "start_at": start_at,
            "notes": notes,
        })

    @classmethod
    def edit(cls, **fields) -> "Operation":
        return cls("edit", fields)

    @classmethod
    def complete(cls) -> "Operation":
        return cls("complete")

    @classmethod
    def reopen(cls) -> "Operation":
        return cls("reopen")

    @classmethod
    def extend(cls, add_days: int) -> "Operation":
        return cls("extend", {"add_days": add_days})


def to_mutation(operation: Operation, task: Task) -> PendingMutation:
    """Build the remote call replaying ``operation``.

    The payload is taken from the locally applied result, so it carries
    absolute values (ids, timestamps, resulting deadline) and never depends
    on what the remote store held before the replay.
    """
    kind = operation.kind
    base = f"/api/tasks/{task.id}"

    if kind == "create":
        payload = {
            "id": task.id,
            "title": task.title,
            "notes": task.notes,
            "category": task.category,
            "priority": task.priority,
            "estimated_days": task.estimated_days,
            "start_at": task.start_at.isoformat(),
        }
        return PendingMutation("POST", "/api/tasks", payload, task_id=task.id)

    if kind == "edit":
        return PendingMutation("PATCH", base, dict(operation.fields), task_id=task.id)

    if kind == "complete":
        payload = {"completed_at": task.completed_at.isoformat()}
        return PendingMutation("POST", f"{base}/complete", payload, task_id=task.id)

    if kind == "reopen":
        return PendingMutation("POST", f"{base}/reopen", {}, task_id=task.id)

    if kind == "extend":
        payload = {
            "add_days": operation.fields["add_days"],
            "due_at": task.due_at.isoformat(),
        }
        return PendingMutation("POST", f"{base}/extend", payload, task_id=task.id)

    raise ValueError(f"Unknown operation: {kind}")
