"""Field-level change-sets for task edits.

A ``TaskEditChanges`` describes, per editable field, whether it stays as is,
is set to a new value or is cleared. The same change-set mutates the local
cache and drives the Notion property patch, so only touched fields are sent.
"""

from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from shared.dates import start_of_tokyo_day
from shared.models import TaskPriority, TaskStatus, TaskTimeslot, TaskType


class UpdateKind(Enum):
    UNCHANGED = "unchanged"
    SET = "set"
    CLEAR = "clear"


@dataclass(frozen=True)
class FieldUpdate:
    """Desired change for a single field."""
    kind: UpdateKind = UpdateKind.UNCHANGED
    value: Any = None

    @classmethod
    def set(cls, value: Any) -> "FieldUpdate":
        return cls(UpdateKind.SET, value)

    @property
    def has_change(self) -> bool:
        return self.kind is not UpdateKind.UNCHANGED

    @property
    def is_set(self) -> bool:
        return self.kind is UpdateKind.SET

    @property
    def is_clear(self) -> bool:
        return self.kind is UpdateKind.CLEAR

    def resolve(self, current: Any) -> Any:
        """Value the field holds after this update is applied to ``current``."""
        if self.kind is UpdateKind.SET:
            return self.value
        if self.kind is UpdateKind.CLEAR:
            return None
        return current


UNCHANGED = FieldUpdate()
CLEAR = FieldUpdate(UpdateKind.CLEAR)


@dataclass(frozen=True)
class TaskEditChanges:
    """Sparse edit over the user-editable task fields."""
    name: FieldUpdate = UNCHANGED
    memo: FieldUpdate = UNCHANGED
    status: FieldUpdate = UNCHANGED
    priority: FieldUpdate = UNCHANGED
    timeslot: FieldUpdate = UNCHANGED
    type: FieldUpdate = UNCHANGED
    timestamp: FieldUpdate = UNCHANGED
    deadline: FieldUpdate = UNCHANGED

    @property
    def is_empty(self) -> bool:
        return not self.changed_fields()

    @property
    def has_changes(self) -> bool:
        return not self.is_empty

    def changed_fields(self) -> List[str]:
        return [f.name for f in fields(self) if getattr(self, f.name).has_change]

    def apply_to(self, task: Any) -> None:
        """
        Mutate a task row in place.

        Name and status are required, so clearing them is ignored.

        Args:
            task: Object exposing the task attributes (typically a TaskRecord)
        """
        for field_name in self.changed_fields():
            update = getattr(self, field_name)
            if field_name in ("name", "status") and (update.is_clear or update.value is None):
                continue
            setattr(task, field_name, update.resolve(getattr(task, field_name)))


@dataclass(frozen=True)
class TaskEditDraft:
    """Desired values for the editable fields of one task."""
    name: str
    status: TaskStatus
    memo: Optional[str] = None
    priority: Optional[TaskPriority] = None
    timeslot: Optional[TaskTimeslot] = None
    type: Optional[TaskType] = None
    timestamp: Optional[datetime] = None
    deadline: Optional[datetime] = None

    @classmethod
    def from_task(cls, task: Any) -> "TaskEditDraft":
        return cls(
            name=task.name,
            status=task.status,
            memo=task.memo,
            priority=task.priority,
            timeslot=task.timeslot,
            type=task.type,
            timestamp=task.timestamp,
            deadline=task.deadline,
        )

    def with_changes(self, **values: Any) -> "TaskEditDraft":
        return replace(self, **values)


def _diff_value(current: Any, desired: Any) -> FieldUpdate:
    if desired == current:
        return UNCHANGED
    if desired is None:
        return CLEAR
    return FieldUpdate.set(desired)


def diff_task_edit(current: Any, draft: TaskEditDraft) -> TaskEditChanges:
    """
    Compute the minimal change-set turning ``current`` into ``draft``.

    Text fields are compared after trimming. A memo that is blank after
    trimming becomes a clear; a blank name is left unchanged because every
    task needs a title. Timestamps are normalized to the JST day.

    Args:
        current: Task row or snapshot holding the observed values
        draft: Desired values

    Returns:
        TaskEditChanges with only the differing fields touched
    """
    desired_name = (draft.name or "").strip()
    if not desired_name or desired_name == (current.name or "").strip():
        name = UNCHANGED
    else:
        name = FieldUpdate.set(desired_name)

    desired_memo = (draft.memo or "").strip()
    if desired_memo == (current.memo or "").strip():
        memo = UNCHANGED
    elif not desired_memo:
        memo = CLEAR
    else:
        memo = FieldUpdate.set(desired_memo)

    desired_timestamp = None
    if draft.timestamp is not None:
        desired_timestamp = start_of_tokyo_day(draft.timestamp)

    return TaskEditChanges(
        name=name,
        memo=memo,
        status=_diff_value(current.status, draft.status),
        priority=_diff_value(current.priority, draft.priority),
        timeslot=_diff_value(current.timeslot, draft.timeslot),
        type=_diff_value(current.type, draft.type),
        timestamp=_diff_value(current.timestamp, desired_timestamp),
        deadline=_diff_value(current.deadline, draft.deadline),
    )
