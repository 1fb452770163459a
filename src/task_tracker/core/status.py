"""Deadline status derivation.

Status is never stored truth: it is recomputed from ``due_at``,
``completed_at`` and the current time whenever it is needed. Any persisted
``status`` column is a cache of this function's output.
"""

from datetime import datetime, timezone
from enum import Enum


class Status(str, Enum):
    ON_TRACK = "On Track"
    DELAYED = "Delayed"
    COMPLETED_ON_TIME = "Completed On Time"
    COMPLETED_LATE = "Completed Late"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def derive_status(
    due_at: datetime,
    completed_at: datetime | None = None,
    now: datetime | None = None,
) -> Status:
    """Derive a task's status.

    Completion is judged against the deadline alone (inclusive), so a
    completed task's status does not depend on ``now``.
    """
    due_at = ensure_utc(due_at)
    if completed_at is not None:
        if ensure_utc(completed_at) <= due_at:
            return Status.COMPLETED_ON_TIME
        return Status.COMPLETED_LATE

    now = ensure_utc(now) if now is not None else utcnow()
    if now > due_at:
        return Status.DELAYED
    return Status.ON_TRACK
