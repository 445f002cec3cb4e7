"""Scope classification for cached tasks and the matching Notion query filter.

The predicates accept anything exposing the task attributes, so they run
against ORM rows and ``TaskSnapshot`` objects alike.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from shared.dates import DateBoundaries, start_of_tokyo_day, tokyo_day, utc_now
from shared.models import TaskScope, TaskStatus, TaskType


class PropertyName:
    """Notion database property names."""
    NAME = "Name"
    MEMO = "Memo"
    STATUS = "Status"
    TIMESTAMP = "Timestamp"
    TIMESLOT = "Timeslot"
    END_TIME = "EndTime"
    START_TIME = "StartTime"
    PRIORITY = "Priority"
    PROJECT = "DB_PROJECT"
    TYPE = "Type"
    NOTE_TYPE = "NoteType"
    ARTICLE_GENRE = "ArticleGenre"
    PERMANENT_TAGS = "PermanentTags"
    DEADLINE = "Deadline"
    SPACE_NAME = "Space Name"
    URL = "URL"


_OPEN_STATUSES = (TaskStatus.TODO, TaskStatus.IN_PROGRESS)
_EXCLUDED_FROM_OVERDUE = (TaskType.WAITING, TaskType.TRASH)


def is_inbox_candidate(task: Any) -> bool:
    return (
        task.status == TaskStatus.TODO
        and task.type is None
        and not task.note_type
    )


def is_overdue_candidate(task: Any, now: Optional[datetime] = None) -> bool:
    """Open, dated, actionable task whose day lies before today (JST)."""
    if task.status not in _OPEN_STATUSES:
        return False
    if task.timestamp is None:
        return False
    if task.type in _EXCLUDED_FROM_OVERDUE:
        return False
    today = start_of_tokyo_day(now or utc_now())
    return task.timestamp < today


def is_same_day(value: Optional[datetime], reference: datetime) -> bool:
    if value is None:
        return False
    return tokyo_day(value) == tokyo_day(reference)


def matches(
    task: Any,
    scope: TaskScope,
    reference_date: datetime,
    boundaries: Optional[DateBoundaries] = None
) -> bool:
    """
    Decide whether a task belongs to a scope on the given day.

    Trashed tasks are expected to be filtered out by the caller.

    Args:
        task: Task row or snapshot
        scope: Scope to test
        reference_date: Any instant within the day of interest
        boundaries: Precomputed boundaries for reference_date

    Returns:
        True when the task falls in the scope
    """
    bounds = boundaries or DateBoundaries.for_date(reference_date)

    if scope == TaskScope.INBOX:
        return is_inbox_candidate(task)

    if scope == TaskScope.TODAY_TODO:
        return task.status == TaskStatus.TODO and bounds.contains(task.timestamp)

    if scope == TaskScope.TODAY_COMPLETED:
        return task.status == TaskStatus.COMPLETE and bounds.contains(task.end_time)

    if scope == TaskScope.IN_PROGRESS:
        if task.status != TaskStatus.IN_PROGRESS:
            return False
        return bounds.contains(task.timestamp) or bounds.contains(task.start_time)

    if scope == TaskScope.OVERDUE:
        if task.status not in _OPEN_STATUSES:
            return False
        if task.type in _EXCLUDED_FROM_OVERDUE:
            return False
        if task.timestamp is None:
            return False
        return task.timestamp < bounds.start_of_day

    raise ValueError(f"Unknown scope: {scope}")


# Notion filter builders

def _status_equals(value: str) -> Dict[str, Any]:
    return {"property": PropertyName.STATUS, "status": {"equals": value}}


def _select_equals(prop: str, value: str) -> Dict[str, Any]:
    return {"property": prop, "select": {"equals": value}}


def _select_is_empty(prop: str) -> Dict[str, Any]:
    return {"property": prop, "select": {"is_empty": True}}


def today_filter(day: str) -> Dict[str, Any]:
    return {"property": PropertyName.TIMESTAMP, "date": {"equals": day}}


def inbox_filter() -> Dict[str, Any]:
    return {
        "and": [
            _select_is_empty(PropertyName.TYPE),
            _status_equals(TaskStatus.TODO.value),
            _select_is_empty(PropertyName.NOTE_TYPE),
        ]
    }


def overdue_filters(day: str) -> List[Dict[str, Any]]:
    timestamp_not_empty = {"property": PropertyName.TIMESTAMP, "date": {"is_not_empty": True}}
    timestamp_before_day = {"property": PropertyName.TIMESTAMP, "date": {"before": day}}

    filters = []
    for status in _OPEN_STATUSES:
        for task_type in (None, TaskType.NEXT_ACTION, TaskType.SOMEDAY):
            if task_type is None:
                type_filter = _select_is_empty(PropertyName.TYPE)
            else:
                type_filter = _select_equals(PropertyName.TYPE, task_type.value)
            filters.append({
                "and": [
                    _status_equals(status.value),
                    type_filter,
                    timestamp_not_empty,
                    timestamp_before_day,
                ]
            })
    return filters


def combined_daily_filter(day: str) -> Dict[str, Any]:
    """
    Build one Notion filter covering TodayTodo, Inbox and Overdue.

    Args:
        day: Target day formatted as yyyy-MM-dd (JST)

    Returns:
        Filter object for a database query
    """
    return {"or": [today_filter(day), inbox_filter(), *overdue_filters(day)]}
