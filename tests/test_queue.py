"""Tests for the durable mutation queue."""

import sqlite3
import tempfile
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from task_tracker.core.queue import MutationQueue, QueueWriteError
from task_tracker.db.engine import get_db
from task_tracker.db.models import PendingMutation


@pytest.fixture
def queue():
    with tempfile.TemporaryDirectory() as tmp:
        yield MutationQueue(Path(tmp) / "queue.db")


def _mutation(n: int) -> PendingMutation:
    return PendingMutation("PATCH", f"/api/tasks/t{n}", {"title": f"T{n}"}, task_id=f"t{n}")


class TestEnqueue:
    def test_assigns_identity(self, queue):
        a = queue.enqueue(_mutation(1))
        b = queue.enqueue(_mutation(2))
        assert a.id is not None
        assert b.id > a.id

    def test_round_trips_payload(self, queue):
        queue.enqueue(PendingMutation("POST", "/api/tasks", {"id": "x", "estimated_days": 3}, "x"))
        [m] = queue.drain()
        assert m.method == "POST"
        assert m.path == "/api/tasks"
        assert m.payload == {"id": "x", "estimated_days": 3}
        assert m.task_id == "x"
        assert m.attempts == 0
        assert m.created_at is not None

    def test_survives_reopen(self, queue):
        queue.enqueue(_mutation(1))
        reopened = MutationQueue(queue.db_path)
        assert reopened.size() == 1

    def test_storage_failure_raises(self, queue):
        with patch("task_tracker.core.queue.get_db", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(QueueWriteError, match="disk I/O error"):
                queue.enqueue(_mutation(1))

    def test_unserializable_payload_raises(self, queue):
        with pytest.raises(QueueWriteError):
            queue.enqueue(PendingMutation("POST", "/api/tasks", {"bad": object()}))
        assert queue.size() == 0

    def test_joins_caller_transaction(self, queue):
        with get_db(queue.db_path) as db:
            queue.enqueue(_mutation(1), db=db)
            db.rollback()
        assert queue.size() == 0

        with get_db(queue.db_path) as db:
            queued = queue.enqueue(_mutation(2), db=db)
            db.commit()
        assert queue.exists(queued)


class TestDrain:
    def test_fifo_order(self, queue):
        for n in range(5):
            queue.enqueue(_mutation(n))
        assert [m.task_id for m in queue.drain()] == [f"t{n}" for n in range(5)]

    def test_drain_does_not_remove(self, queue):
        queue.enqueue(_mutation(1))
        queue.drain()
        assert queue.size() == 1

    def test_empty(self, queue):
        assert queue.drain() == []
        assert queue.size() == 0


class TestRemove:
    def test_remove_by_identity(self, queue):
        a = queue.enqueue(_mutation(1))
        b = queue.enqueue(_mutation(2))
        c = queue.enqueue(_mutation(3))
        assert queue.remove(b) is True
        assert [m.id for m in queue.drain()] == [a.id, c.id]

    def test_remove_twice(self, queue):
        a = queue.enqueue(_mutation(1))
        assert queue.remove(a) is True
        assert queue.remove(a) is False

    def test_enqueue_during_drain_is_kept(self, queue):
        queue.enqueue(_mutation(1))
        queue.enqueue(_mutation(2))
        snapshot = queue.drain()
        late = queue.enqueue(_mutation(3))
        for m in snapshot:
            queue.remove(m)
        assert [m.id for m in queue.drain()] == [late.id]

    def test_ids_not_reused(self, queue):
        a = queue.enqueue(_mutation(1))
        queue.remove(a)
        b = queue.enqueue(_mutation(2))
        assert b.id > a.id


class TestFailures:
    def test_record_failure_keeps_position(self, queue):
        a = queue.enqueue(_mutation(1))
        b = queue.enqueue(_mutation(2))
        queue.record_failure(a, "timed out")
        queue.record_failure(a, "connection refused")
        first, second = queue.drain()
        assert first.id == a.id
        assert first.attempts == 2
        assert first.last_error == "connection refused"
        assert second.id == b.id
        assert second.attempts == 0


class TestConcurrency:
    def test_parallel_enqueues_are_all_kept(self, queue):
        queue.size()  # create schema before threads race on it

        def worker(offset):
            for n in range(20):
                queue.enqueue(_mutation(offset + n))

        threads = [threading.Thread(target=worker, args=(i * 100,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert queue.size() == 80
