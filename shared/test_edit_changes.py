"""Tests for task edit change-sets and the draft diff."""

from dataclasses import replace
from datetime import datetime, timezone
from types import SimpleNamespace

from shared.dates import TOKYO
from shared.edit_changes import (
    CLEAR,
    UNCHANGED,
    FieldUpdate,
    TaskEditChanges,
    TaskEditDraft,
    diff_task_edit,
)
from shared.models import TaskPriority, TaskSnapshot, TaskStatus, TaskTimeslot, TaskType

NOW = datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)


def make_task(**overrides) -> TaskSnapshot:
    values = dict(
        notion_id="page-1",
        name="Write report",
        status=TaskStatus.TODO,
        updated_at=NOW,
        created_at=NOW,
        memo="draft",
        priority=TaskPriority.TWO_STARS,
        timeslot=TaskTimeslot.MORNING,
        type=TaskType.NEXT_ACTION,
        timestamp=datetime(2024, 5, 1, tzinfo=TOKYO),
    )
    values.update(overrides)
    return TaskSnapshot(**values)


def as_row(task: TaskSnapshot) -> SimpleNamespace:
    return SimpleNamespace(**task.__dict__)


def editable(obj):
    return TaskEditDraft.from_task(obj)


class TestFieldUpdate:

    def test_resolve(self):
        assert UNCHANGED.resolve("current") == "current"
        assert CLEAR.resolve("current") is None
        assert FieldUpdate.set("new").resolve("current") == "new"

    def test_flags(self):
        assert not UNCHANGED.has_change
        assert CLEAR.has_change and CLEAR.is_clear
        assert FieldUpdate.set(1).is_set


class TestTaskEditChanges:

    def test_empty(self):
        changes = TaskEditChanges()
        assert changes.is_empty
        assert not changes.has_changes
        assert changes.changed_fields() == []

    def test_empty_change_set_is_a_no_op(self):
        row = as_row(make_task())
        before = dict(row.__dict__)

        TaskEditChanges().apply_to(row)

        assert row.__dict__ == before

    def test_clearing_name_or_status_is_ignored(self):
        row = as_row(make_task())

        TaskEditChanges(name=CLEAR, status=CLEAR, type=CLEAR).apply_to(row)

        assert row.name == "Write report"
        assert row.status == TaskStatus.TODO
        assert row.type is None


class TestDiff:

    def test_identical_draft_is_empty(self):
        task = make_task()
        assert diff_task_edit(task, editable(task)).is_empty

    def test_text_is_trimmed(self):
        task = make_task()
        draft = editable(task).with_changes(name="  Write report ", memo=" draft\n")
        assert diff_task_edit(task, draft).is_empty

    def test_blank_memo_clears(self):
        task = make_task()
        changes = diff_task_edit(task, editable(task).with_changes(memo="   "))
        assert changes.memo == CLEAR
        assert changes.changed_fields() == ["memo"]

    def test_blank_name_is_unchanged(self):
        task = make_task()
        changes = diff_task_edit(task, editable(task).with_changes(name=""))
        assert changes.is_empty

    def test_non_text_fields(self):
        task = make_task()
        draft = editable(task).with_changes(
            priority=TaskPriority.FOUR_STARS,
            timeslot=None,
            status=TaskStatus.IN_PROGRESS
        )

        changes = diff_task_edit(task, draft)

        assert changes.priority == FieldUpdate.set(TaskPriority.FOUR_STARS)
        assert changes.timeslot == CLEAR
        assert changes.status == FieldUpdate.set(TaskStatus.IN_PROGRESS)
        assert changes.type == UNCHANGED

    def test_timestamp_normalized_to_jst_day(self):
        task = make_task(timestamp=None)
        draft = editable(task).with_changes(timestamp=datetime(2024, 5, 2, 22, 0, tzinfo=timezone.utc))

        changes = diff_task_edit(task, draft)

        assert changes.timestamp == FieldUpdate.set(datetime(2024, 5, 3, tzinfo=TOKYO))

    def test_applying_diff_reproduces_draft(self):
        task = make_task()
        draft = editable(task).with_changes(
            name="Ship report",
            memo=None,
            priority=None,
            timeslot=TaskTimeslot.EVENING,
            type=TaskType.SOMEDAY,
            deadline=datetime(2024, 5, 10, 18, 0, tzinfo=TOKYO)
        )
        row = as_row(task)

        diff_task_edit(task, draft).apply_to(row)

        assert editable(row) == draft
        assert diff_task_edit(row, draft).is_empty

    def test_diff_against_updated_snapshot_is_empty(self):
        task = make_task()
        draft = editable(task).with_changes(memo="final")
        updated = replace(task, memo="final")
        assert diff_task_edit(updated, draft).is_empty
