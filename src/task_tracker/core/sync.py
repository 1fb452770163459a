"""Replay of queued mutations against the remote store."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from task_tracker.core import lifecycle
from task_tracker.core.lifecycle import NotFoundError, ValidationError
from task_tracker.core.queue import MutationQueue
from task_tracker.db.engine import get_db
from task_tracker.db.models import PendingMutation
from task_tracker.integrations.remote import RemoteError, RemoteStore, TransientRemoteError

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    remaining: int = 0
    cancelled: bool = False
    online: bool = True


class SyncCoordinator:
    """Drains the mutation queue in order, one mutation at a time.

    Both triggers (connectivity restored, periodic tick) end up in
    ``flush``, which holds a lock for the whole drain. A failed replay stays
    queued at its position and the drain moves on to the next entry.
    Retries are unbounded; the next attempt happens on the next trigger.
    """

    def __init__(
        self,
        queue: MutationQueue,
        remote: RemoteStore,
        db_path: Path | None = None,
        is_online: Callable[[], bool] | None = None,
    ):
        self.queue = queue
        self.remote = remote
        self.db_path = db_path
        self.is_online = is_online or remote.ping
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()

    def flush(self) -> SyncResult:
        """Attempt every currently queued mutation once."""
        with self._lock:
            self._cancel_event.clear()
            result = SyncResult()
            for mutation in self.queue.drain():
                if self._cancel_event.is_set():
                    result.cancelled = True
                    logger.info("Drain cancelled; unconfirmed mutations stay queued")
                    break
                result.attempted += 1
                try:
                    self.remote.replay(mutation)
                except Exception as e:
                    result.failed += 1
                    logger.warning(
                        "Replay of mutation #%s (%s %s) failed: %s",
                        mutation.id, mutation.method, mutation.path, e,
                    )
                    self.queue.record_failure(mutation, str(e))
                    continue
                self.queue.remove(mutation)
                result.succeeded += 1

            result.remaining = self.queue.size()

        if result.attempted:
            logger.info(
                "Drain finished: %d replayed, %d failed, %d pending",
                result.succeeded, result.failed, result.remaining,
            )
        return result

    def send(self, mutation: PendingMutation) -> bool:
        """Replay one queued mutation now instead of waiting for a drain.

        Returns whether it has left the queue. A transient failure leaves it
        queued for the next drain; a rejection drops it and propagates, since
        it would fail the same way on every retry.
        """
        with self._lock:
            if not self.queue.exists(mutation):
                return True
            try:
                self.remote.replay(mutation)
            except TransientRemoteError as e:
                logger.info(
                    "Remote store unavailable (%s); %s %s stays queued",
                    e, mutation.method, mutation.path,
                )
                self.queue.record_failure(mutation, str(e))
                return False
            except (NotFoundError, ValidationError, RemoteError):
                self.queue.remove(mutation)
                raise
            self.queue.remove(mutation)
            return True

    def cancel(self):
        """Abandon a drain in progress after its current mutation."""
        self._cancel_event.set()

    def on_connectivity_restored(self) -> SyncResult:
        logger.info("Connectivity restored; flushing %d queued mutation(s)", self.queue.size())
        return self.flush()

    def tick(self, now: datetime | None = None) -> SyncResult:
        """Periodic trigger: heal local statuses, re-check connectivity, drain."""
        if self.db_path is not None:
            with get_db(self.db_path) as db:
                lifecycle.refresh_statuses(db, now=now)

        pending = self.queue.size()
        if not pending:
            return SyncResult()
        if not self.is_online():
            logger.debug("Remote store offline; %d mutation(s) stay queued", pending)
            return SyncResult(remaining=pending, online=False)
        return self.flush()


class SyncMonitor:
    """Background thread that ticks the sync coordinator."""

    def __init__(self, coordinator: SyncCoordinator, interval: float = 60.0):
        self.coordinator = coordinator
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the monitor thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="sync-monitor", daemon=True)
        self._thread.start()
        logger.info("Sync monitor started (every %ss)", self.interval)

    def stop(self):
        """Signal the monitor thread to stop, abandoning any running drain."""
        self._stop_event.set()
        self.coordinator.cancel()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Sync monitor stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.coordinator.tick()
            except Exception:
                logger.exception("Error in sync monitor loop")
            self._stop_event.wait(self.interval)
