"""Shared data models for the Notion task sync application."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class TaskStatus(str, Enum):
    """Workflow status; values are the Notion status option names."""
    TODO = "To Do"
    IN_PROGRESS = "In Progress"
    COMPLETE = "Complete"


class TaskTimeslot(str, Enum):
    """Part of the day a task is planned for."""
    MORNING = "Morning"
    FORENOON = "Forenoon"
    AFTERNOON = "Afternoon"
    EVENING = "Evening"


class TaskPriority(str, Enum):
    """Star rating; values are the Notion select option names."""
    FOUR_STARS = "★★★★"
    THREE_AND_HALF = "★★★☆"
    TWO_STARS = "★★☆☆"
    ONE_STAR = "★☆☆☆"

    @property
    def score(self) -> int:
        return _PRIORITY_SCORES[self]


_PRIORITY_SCORES = {
    TaskPriority.FOUR_STARS: 4,
    TaskPriority.THREE_AND_HALF: 3,
    TaskPriority.TWO_STARS: 2,
    TaskPriority.ONE_STAR: 1,
}


def priority_score(priority: Optional[TaskPriority]) -> int:
    """Ordinal used for sorting; a missing priority scores 0."""
    return priority.score if priority is not None else 0


class TaskType(str, Enum):
    """GTD bucket of a task."""
    NEXT_ACTION = "NextAction"
    SOMEDAY = "Someday"
    WAITING = "Waiting"
    TRASH = "Trash"


class TaskScope(str, Enum):
    """Mutually exclusive buckets a cached task is classified into."""
    INBOX = "inbox"
    TODAY_TODO = "today_todo"
    TODAY_COMPLETED = "today_completed"
    IN_PROGRESS = "in_progress"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class TaskSnapshot:
    """Immutable copy of every field of a cached task.

    Used both as the mapped result of a Notion query and as the rollback
    checkpoint captured before an optimistic mutation.
    """
    notion_id: str
    name: str
    status: TaskStatus
    updated_at: datetime
    created_at: datetime
    memo: Optional[str] = None
    timestamp: Optional[datetime] = None
    timeslot: Optional[TaskTimeslot] = None
    end_time: Optional[datetime] = None
    start_time: Optional[datetime] = None
    priority: Optional[TaskPriority] = None
    project_ids: List[str] = field(default_factory=list)
    type: Optional[TaskType] = None
    note_type: Optional[str] = None
    article_genres: List[str] = field(default_factory=list)
    permanent_tags: List[str] = field(default_factory=list)
    deadline: Optional[datetime] = None
    space_name: Optional[str] = None
    url: Optional[str] = None
    bookmark_url: Optional[str] = None


# Fields copied wholesale on merge, overwrite and snapshot capture.
MAPPABLE_FIELDS = (
    "name",
    "memo",
    "status",
    "timestamp",
    "timeslot",
    "end_time",
    "start_time",
    "priority",
    "project_ids",
    "type",
    "note_type",
    "article_genres",
    "permanent_tags",
    "deadline",
    "space_name",
    "url",
    "bookmark_url",
    "updated_at",
    "created_at",
)


@dataclass(frozen=True)
class NotionCredentials:
    """Token, database and API version used for every Notion request."""
    token: str
    database_id: str
    notion_version: str

    @property
    def usable(self) -> bool:
        return bool(self.token.strip()) and bool(self.database_id.strip())
