"""Offline-first client: apply locally, reach the remote store when possible."""

import logging
import sqlite3
from datetime import datetime

from task_tracker.core import lifecycle
from task_tracker.core.lifecycle import NotFoundError, ValidationError
from task_tracker.core.operations import Operation, to_mutation
from task_tracker.core.queue import MutationQueue
from task_tracker.core.sync import SyncCoordinator, SyncResult
from task_tracker.db.models import PendingMutation, Task
from task_tracker.integrations.remote import RemoteError, RemoteStore

logger = logging.getLogger(__name__)


class RemoteRejectedError(Exception):
    """Raised when the store refuses a change that is already applied locally."""

    def __init__(self, task: Task | None, cause: Exception):
        super().__init__(str(cause))
        self.task = task
        self.cause = cause


class OfflineClient:
    """Applies operations optimistically to the local store.

    Validation errors surface before anything is written. The local write
    and its queue entry commit together, so a change is never kept locally
    without also being on its way to the remote store. When the queue was
    empty and the store is reachable the entry is sent right away; otherwise
    it waits for the next drain, and later remote failures only show up as
    queue size.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        queue: MutationQueue,
        remote: RemoteStore,
        coordinator: SyncCoordinator | None = None,
        forced_offline: bool = False,
    ):
        self.db = db
        self.queue = queue
        self.remote = remote
        self.forced_offline = forced_offline
        self.coordinator = coordinator or SyncCoordinator(
            queue, remote, is_online=self.is_online
        )

    def is_online(self) -> bool:
        if self.forced_offline:
            return False
        return self.remote.ping()

    def apply_operation(
        self,
        task_id: str | None,
        operation: Operation,
        now: datetime | None = None,
    ) -> Task:
        """Apply locally and queue the replayable mutation in one commit.

        Raises ``QueueWriteError`` with the local write rolled back when the
        mutation cannot be queued, and ``RemoteRejectedError`` when the store
        refuses a change sent straight away.
        """
        was_empty = not self.queue.size()
        try:
            task = lifecycle.apply_operation(self.db, task_id, operation, now=now, commit=False)
            queued = self.queue.enqueue(to_mutation(operation, task), db=self.db)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if was_empty:
            self._forward(queued, task)
        return task

    def enqueue_if_offline(self, mutation: PendingMutation) -> PendingMutation | None:
        """Queue ``mutation``, then send it now if nothing was queued before it.

        Returns the entry while it is still waiting in the queue. Anything
        already queued goes first, so a non-empty queue means this mutation
        waits its turn even when the store is reachable.
        """
        was_empty = not self.queue.size()
        queued = self.queue.enqueue(mutation)
        if was_empty and self._forward(queued, None):
            return None
        return queued

    def _forward(self, queued: PendingMutation, task: Task | None) -> bool:
        if not self.is_online():
            return False
        try:
            return self.coordinator.send(queued)
        except (NotFoundError, ValidationError, RemoteError) as e:
            logger.warning("Remote store rejected %s %s: %s", queued.method, queued.path, e)
            raise RemoteRejectedError(task, e) from e

    def flush(self) -> SyncResult:
        """Drain the queue if the remote store is reachable."""
        if not self.is_online():
            return SyncResult(remaining=self.queue.size(), online=False)
        return self.coordinator.flush()

    def pending(self) -> list[PendingMutation]:
        return self.queue.drain()
