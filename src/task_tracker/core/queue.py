"""Durable FIFO queue of mutations waiting to reach the remote store."""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from task_tracker.core.status import ensure_utc, utcnow
from task_tracker.db.engine import get_db
from task_tracker.db.models import PendingMutation

logger = logging.getLogger(__name__)


class QueueWriteError(Exception):
    """Raised when a mutation could not be durably recorded."""


class MutationQueue:
    """Append-only log of pending mutations backed by a sqlite table.

    Each call uses its own connection unless the caller passes one to
    ``enqueue``, so appends are safe while another thread drains. Entries are
    identified by their row id, never by position.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def enqueue(
        self,
        mutation: PendingMutation,
        db: sqlite3.Connection | None = None,
    ) -> PendingMutation:
        """Append a mutation.

        Given ``db``, the row joins that connection's open transaction and the
        caller commits it together with the local write. Otherwise it is
        committed before this returns.
        """
        try:
            if db is not None:
                row = _insert(db, mutation)
            else:
                with get_db(self.db_path) as conn:
                    row = _insert(conn, mutation)
                    conn.commit()
        except (sqlite3.Error, OSError, TypeError, ValueError) as e:
            raise QueueWriteError(
                f"Could not queue {mutation.method} {mutation.path}: {e}"
            ) from e

        queued = _row_to_mutation(row)
        logger.debug("Queued mutation #%s %s %s", queued.id, queued.method, queued.path)
        return queued

    def drain(self) -> list[PendingMutation]:
        """Snapshot of all queued mutations in FIFO order. Removes nothing."""
        with get_db(self.db_path) as db:
            rows = db.execute("SELECT * FROM pending_mutations ORDER BY id").fetchall()
        return [_row_to_mutation(r) for r in rows]

    def remove(self, mutation: PendingMutation) -> bool:
        """Remove a mutation by identity after it was replayed."""
        with get_db(self.db_path) as db:
            result = db.execute(
                "DELETE FROM pending_mutations WHERE id = ?", (mutation.id,)
            )
            db.commit()
        return result.rowcount > 0

    def exists(self, mutation: PendingMutation) -> bool:
        """Whether a mutation is still waiting in the queue."""
        with get_db(self.db_path) as db:
            row = db.execute(
                "SELECT 1 FROM pending_mutations WHERE id = ?", (mutation.id,)
            ).fetchone()
        return row is not None

    def record_failure(self, mutation: PendingMutation, error: str) -> None:
        """Note a failed replay without moving the entry."""
        with get_db(self.db_path) as db:
            db.execute(
                "UPDATE pending_mutations SET attempts = attempts + 1, last_error = ? WHERE id = ?",
                (error, mutation.id),
            )
            db.commit()

    def size(self) -> int:
        with get_db(self.db_path) as db:
            row = db.execute("SELECT COUNT(*) AS n FROM pending_mutations").fetchone()
        return row["n"]


def _insert(db: sqlite3.Connection, mutation: PendingMutation) -> sqlite3.Row:
    cur = db.execute(
        """INSERT INTO pending_mutations (method, path, payload, task_id, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (
            mutation.method,
            mutation.path,
            json.dumps(mutation.payload),
            mutation.task_id,
            utcnow().isoformat(),
        ),
    )
    return db.execute("SELECT * FROM pending_mutations WHERE id = ?", (cur.lastrowid,)).fetchone()


def _row_to_mutation(row: sqlite3.Row) -> PendingMutation:
    return PendingMutation(
        id=row["id"],
        method=row["method"],
        path=row["path"],
        payload=json.loads(row["payload"]),
        task_id=row["task_id"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return ensure_utc(datetime.fromisoformat(val))
