"""Tests for turning applied operations into replayable mutations."""

from datetime import datetime, timedelta, timezone

import pytest

from task_tracker.core.operations import Operation, to_mutation
from task_tracker.db.models import Task

DAY0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def task():
    return Task(
        id="t1",
        title="Draft",
        start_at=DAY0,
        estimated_days=3,
        due_at=DAY0 + timedelta(days=3),
        status="On Track",
    )


def test_create_carries_id_and_fields(task):
    m = to_mutation(Operation.create("Draft", estimated_days=3), task)
    assert (m.method, m.path, m.task_id) == ("POST", "/api/tasks", "t1")
    assert m.payload["id"] == "t1"
    assert m.payload["start_at"] == DAY0.isoformat()
    assert m.payload["category"] == "General"


def test_edit_carries_changed_fields(task):
    m = to_mutation(Operation.edit(title="New", archived=True), task)
    assert (m.method, m.path) == ("PATCH", "/api/tasks/t1")
    assert m.payload == {"title": "New", "archived": True}


def test_complete_carries_timestamp(task):
    task.completed_at = DAY0 + timedelta(days=1)
    m = to_mutation(Operation.complete(), task)
    assert m.path == "/api/tasks/t1/complete"
    assert m.payload == {"completed_at": task.completed_at.isoformat()}


def test_reopen(task):
    m = to_mutation(Operation.reopen(), task)
    assert (m.method, m.path, m.payload) == ("POST", "/api/tasks/t1/reopen", {})


def test_extend_carries_resulting_deadline(task):
    m = to_mutation(Operation.extend(2), task)
    assert m.path == "/api/tasks/t1/extend"
    assert m.payload == {"add_days": 2, "due_at": task.due_at.isoformat()}


def test_unknown_kind(task):
    with pytest.raises(ValueError):
        to_mutation(Operation("archive"), task)
