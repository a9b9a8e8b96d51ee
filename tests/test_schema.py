"""
Tests for the board data model.

Covers:
    - Task / ActivityItem   — document encoding, absent-field omission
    - enum normalization    — unknown status/priority fall back to defaults
    - format_timestamp()    — relative activity labels
    - parse_tags()          — comma-separated tag input
"""

from datetime import datetime, timedelta, timezone

import pytest

from taskboard.schema import (
    ActivityItem,
    ChangeRecord,
    Task,
    TaskPriority,
    TaskStatus,
    format_timestamp,
    generate_id,
    parse_tags,
    strip_absent,
    tasks_from_document,
    tasks_to_document,
)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Task
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTask:

    def test_create_defaults(self):
        task = Task.create("Write docs")
        assert task.title == "Write docs"
        assert task.status == TaskStatus.BACKLOG
        assert task.priority == TaskPriority.MEDIUM
        assert task.created_at == task.updated_at
        assert task.history is None

    def test_create_trims_and_normalizes(self):
        task = Task.create("  Ship it  ", description="   ", tags=[" ops", "", "ops", "db"], link=" ")
        assert task.title == "Ship it"
        assert task.description is None
        assert task.tags == ["ops", "db"]
        assert task.link is None

    def test_create_rejects_empty_title(self):
        with pytest.raises(ValueError):
            Task.create("   ")

    def test_to_dict_uses_camel_case(self):
        task = Task.create("Deploy", tags=["ops"], link="https://example.com")
        data = task.to_dict()
        assert data["createdAt"] == task.created_at
        assert data["updatedAt"] == task.updated_at
        assert data["status"] == "backlog"
        assert data["tags"] == ["ops"]
        assert "created_at" not in data

    def test_absent_fields_are_omitted_not_null(self):
        data = Task.create("Bare").to_dict()
        for key in ("description", "tags", "link", "history"):
            assert key not in data
        assert None not in data.values()

    def test_history_encoding(self):
        task = Task.create("Edited")
        task.history = [ChangeRecord(field="title", old_value="Old", new_value="Edited")]
        record = task.to_dict()["history"][0]
        assert record["field"] == "title"
        assert record["oldValue"] == "Old"
        assert record["newValue"] == "Edited"

    def test_from_dict_restores_fields(self):
        task = Task.create("Round", description="d", priority=TaskPriority.HIGH, tags=["x"])
        restored = Task.from_dict(task.to_dict())
        assert restored == task

    def test_unknown_enum_values_fall_back(self):
        task = Task.from_dict({"id": "t1", "title": "Odd", "status": "archived", "priority": "urgent"})
        assert task.status == TaskStatus.BACKLOG
        assert task.priority == TaskPriority.MEDIUM

    def test_updated_at_never_precedes_created_at(self):
        task = Task.from_dict({
            "id": "t1",
            "title": "Clock skew",
            "createdAt": "2026-01-02T00:00:00.000Z",
            "updatedAt": "2026-01-01T00:00:00.000Z",
        })
        assert task.updated_at == task.created_at

    def test_column_titles(self):
        assert TaskStatus.IN_PROGRESS.title == "In Progress"
        assert [s.value for s in TaskStatus] == ["backlog", "in-progress", "revision", "review", "done"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Documents
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDocuments:

    def test_board_document_carries_revision_and_origin(self):
        tasks = [Task.create("A"), Task.create("B")]
        doc = tasks_to_document(tasks, revision=7, origin="client-1")
        assert doc["revision"] == 7
        assert doc["origin"] == "client-1"
        assert [t["title"] for t in doc["tasks"]] == ["A", "B"]
        assert tasks_from_document(doc) == tasks

    def test_missing_task_list_is_empty(self):
        assert tasks_from_document({"revision": 3}) == []

    def test_strip_absent_is_recursive(self):
        doc = {"a": None, "b": {"c": None, "d": 1}, "e": [{"f": None, "g": 2}]}
        assert strip_absent(doc) == {"b": {"d": 1}, "e": [{"g": 2}]}

    def test_activity_item_encoding(self):
        item = ActivityItem(action="Created", task_title="Write docs")
        data = item.to_dict()
        assert data["taskTitle"] == "Write docs"
        assert "details" not in data
        assert ActivityItem.from_dict(data) == item

    def test_generated_ids_are_unique(self):
        ids = {generate_id() for _ in range(200)}
        assert len(ids) == 200


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Formatting helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFormatTimestamp:

    NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)

    def _ago(self, **delta):
        return (self.NOW - timedelta(**delta)).isoformat()

    def test_just_now(self):
        assert format_timestamp(self._ago(seconds=30), now=self.NOW) == "just now"

    def test_minutes(self):
        assert format_timestamp(self._ago(minutes=5), now=self.NOW) == "5m ago"

    def test_hours(self):
        assert format_timestamp(self._ago(hours=3), now=self.NOW) == "3h ago"

    def test_older_than_a_day_shows_date(self):
        assert format_timestamp("2026-10-02T08:00:00.000Z", now=self.NOW) == "Oct 2"


class TestParseTags:

    def test_splits_and_trims(self):
        assert parse_tags("ops, deploy ,,x") == ["ops", "deploy", "x"]

    def test_empty_is_none(self):
        assert parse_tags("") is None
        assert parse_tags(" , ") is None
