"""Tests for replaying queued mutations."""

import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from task_tracker.core import lifecycle
from task_tracker.core.lifecycle import ValidationError
from task_tracker.core import tasks as store
from task_tracker.core.queue import MutationQueue
from task_tracker.core.status import Status
from task_tracker.core.sync import SyncCoordinator, SyncMonitor
from task_tracker.db.engine import init_db
from task_tracker.db.models import PendingMutation
from task_tracker.integrations.remote import TransientRemoteError

DAY0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeRemote:
    """Records replays; fails any path listed in ``failing``."""

    def __init__(self, failing=(), online=True):
        self.failing = set(failing)
        self.online = online
        self.replayed: list[str] = []
        self.on_replay = None

    def ping(self) -> bool:
        return self.online

    def replay(self, mutation: PendingMutation) -> dict:
        if self.on_replay:
            self.on_replay(mutation)
        if mutation.path in self.failing:
            raise TransientRemoteError(f"{mutation.path} unavailable")
        self.replayed.append(mutation.path)
        return {}


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def queue(tmp_dir):
    return MutationQueue(tmp_dir / "client.db")


def _enqueue(queue, *names):
    return [queue.enqueue(PendingMutation("POST", f"/{n}", {})) for n in names]


class TestFlush:
    def test_replays_in_order_and_removes(self, queue):
        remote = FakeRemote()
        _enqueue(queue, "a", "b")
        result = SyncCoordinator(queue, remote).flush()
        assert remote.replayed == ["/a", "/b"]
        assert result.attempted == 2
        assert result.succeeded == 2
        assert result.remaining == 0
        assert queue.size() == 0

    def test_partial_failure_keeps_only_failed(self, queue):
        remote = FakeRemote(failing={"/a"})
        a, _ = _enqueue(queue, "a", "b")
        result = SyncCoordinator(queue, remote).flush()
        assert remote.replayed == ["/b"]
        assert result.failed == 1
        assert result.succeeded == 1
        [left] = queue.drain()
        assert left.id == a.id
        assert left.attempts == 1
        assert "unavailable" in left.last_error

    def test_failed_entry_keeps_relative_order(self, queue):
        remote = FakeRemote(failing={"/a", "/c"})
        a, _, c, _ = _enqueue(queue, "a", "b", "c", "d")
        SyncCoordinator(queue, remote).flush()
        assert [m.id for m in queue.drain()] == [a.id, c.id]

    def test_retried_on_next_flush(self, queue):
        remote = FakeRemote(failing={"/a"})
        _enqueue(queue, "a", "b")
        coordinator = SyncCoordinator(queue, remote)
        coordinator.flush()
        remote.failing.clear()
        coordinator.flush()
        assert remote.replayed == ["/b", "/a"]
        assert queue.size() == 0

    def test_unexpected_errors_do_not_stop_drain(self, queue):
        remote = FakeRemote()

        def explode(mutation):
            if mutation.path == "/a":
                raise RuntimeError("boom")

        remote.on_replay = explode
        _enqueue(queue, "a", "b")
        result = SyncCoordinator(queue, remote).flush()
        assert remote.replayed == ["/b"]
        assert result.failed == 1
        assert queue.size() == 1

    def test_empty_queue(self, queue):
        result = SyncCoordinator(queue, FakeRemote()).flush()
        assert result.attempted == 0

    def test_enqueue_mid_drain_survives(self, queue):
        remote = FakeRemote()
        _enqueue(queue, "a", "b")
        late = []

        def add_late(mutation):
            if mutation.path == "/a" and not late:
                late.extend(_enqueue(queue, "late"))

        remote.on_replay = add_late
        SyncCoordinator(queue, remote).flush()
        assert remote.replayed == ["/a", "/b"]
        assert [m.id for m in queue.drain()] == [late[0].id]

    def test_cancel_leaves_rest_queued(self, queue):
        remote = FakeRemote()
        coordinator = SyncCoordinator(queue, remote)
        _, b, c = _enqueue(queue, "a", "b", "c")

        def cancel_after_first(mutation):
            coordinator.cancel()

        remote.on_replay = cancel_after_first
        result = coordinator.flush()
        assert result.cancelled is True
        assert remote.replayed == ["/a"]
        assert [m.id for m in queue.drain()] == [b.id, c.id]

    def test_connectivity_restored_flushes(self, queue):
        remote = FakeRemote()
        _enqueue(queue, "a")
        SyncCoordinator(queue, remote).on_connectivity_restored()
        assert queue.size() == 0

    def test_concurrent_flushes_replay_once(self, queue):
        remote = FakeRemote()
        _enqueue(queue, *[f"m{n}" for n in range(10)])
        coordinator = SyncCoordinator(queue, remote)
        threads = [threading.Thread(target=coordinator.flush) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert remote.replayed == [f"/m{n}" for n in range(10)]


class TestSend:
    def test_accepted_is_removed(self, queue):
        remote = FakeRemote()
        [m] = _enqueue(queue, "a")
        assert SyncCoordinator(queue, remote).send(m) is True
        assert remote.replayed == ["/a"]
        assert queue.size() == 0

    def test_transient_failure_stays_queued(self, queue):
        remote = FakeRemote(failing={"/a"})
        [m] = _enqueue(queue, "a")
        assert SyncCoordinator(queue, remote).send(m) is False
        [left] = queue.drain()
        assert left.attempts == 1

    def test_rejection_is_dropped_and_raised(self, queue):
        remote = FakeRemote()

        def reject(mutation):
            raise ValidationError("title must not be empty")

        remote.on_replay = reject
        [m] = _enqueue(queue, "a")
        with pytest.raises(ValidationError):
            SyncCoordinator(queue, remote).send(m)
        assert queue.size() == 0

    def test_already_drained_is_not_replayed_again(self, queue):
        remote = FakeRemote()
        [m] = _enqueue(queue, "a")
        coordinator = SyncCoordinator(queue, remote)
        coordinator.flush()
        assert coordinator.send(m) is True
        assert remote.replayed == ["/a"]


class TestTick:
    def test_offline_skips_drain(self, queue):
        remote = FakeRemote(online=False)
        _enqueue(queue, "a")
        result = SyncCoordinator(queue, remote).tick()
        assert result.online is False
        assert result.remaining == 1
        assert remote.replayed == []

    def test_online_drains(self, queue):
        remote = FakeRemote()
        _enqueue(queue, "a")
        SyncCoordinator(queue, remote).tick()
        assert remote.replayed == ["/a"]

    def test_custom_connectivity_check(self, queue):
        remote = FakeRemote(online=True)
        _enqueue(queue, "a")
        SyncCoordinator(queue, remote, is_online=lambda: False).tick()
        assert queue.size() == 1

    def test_heals_local_statuses(self, tmp_dir, queue):
        db_path = tmp_dir / "client.db"
        db = init_db(db_path)
        task = lifecycle.create_task(db, "Due soon", estimated_days=1, start_at=DAY0, now=DAY0)
        db.close()

        coordinator = SyncCoordinator(queue, FakeRemote(), db_path=db_path)
        coordinator.tick(now=DAY0 + timedelta(days=2))

        db = init_db(db_path)
        try:
            assert store.get_task(db, task.id).status == Status.DELAYED
        finally:
            db.close()


class TestSyncMonitor:
    def test_ticks_in_background(self, queue):
        remote = FakeRemote()
        _enqueue(queue, "a")
        done = threading.Event()
        remote.on_replay = lambda m: done.set()

        monitor = SyncMonitor(SyncCoordinator(queue, remote), interval=0.05)
        monitor.start()
        try:
            assert done.wait(timeout=5)
        finally:
            monitor.stop()
        assert remote.replayed == ["/a"]

    def test_survives_tick_errors(self, queue):
        remote = FakeRemote()
        calls = []

        def broken_ping():
            calls.append(1)
            raise RuntimeError("dns failure")

        _enqueue(queue, "a")
        monitor = SyncMonitor(SyncCoordinator(queue, remote, is_online=broken_ping), interval=0.01)
        monitor.start()
        try:
            deadline = threading.Event()
            deadline.wait(0.3)
        finally:
            monitor.stop()
        assert len(calls) > 1
