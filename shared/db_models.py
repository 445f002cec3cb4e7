"""SQLAlchemy database models for the Notion task cache."""

from datetime import timezone
from sqlalchemy import (
    Column, String, Integer, Text, DateTime, JSON, Enum as SAEnum, Index, TypeDecorator
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from shared.dates import ensure_aware
from shared.models import TaskPriority, TaskStatus, TaskTimeslot, TaskType


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as naive UTC.

    SQLite drops tzinfo, so values are converted to UTC on the way in and
    tagged as UTC on the way out. Naive values being written are read as JST.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return ensure_aware(value).astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum(enum_cls, name: str) -> SAEnum:
    # Persist the Notion option names rather than the Python member names.
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        native_enum=False,
        validate_strings=True,
    )


Base = declarative_base()


class TaskRecord(Base):
    """Model for the tasks table (one row per Notion page)."""
    __tablename__ = 'tasks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    notion_id = Column(String(64), nullable=False, unique=True)
    name = Column(Text, nullable=False)
    memo = Column(Text, nullable=True)
    status = Column(_enum(TaskStatus, 'task_status'), nullable=False, default=TaskStatus.TODO)
    timestamp = Column(UTCDateTime(), nullable=True)
    timeslot = Column(_enum(TaskTimeslot, 'task_timeslot'), nullable=True)
    end_time = Column(UTCDateTime(), nullable=True)
    start_time = Column(UTCDateTime(), nullable=True)
    priority = Column(_enum(TaskPriority, 'task_priority'), nullable=True)
    project_ids = Column(JSON, nullable=False, default=list)
    type = Column(_enum(TaskType, 'task_type'), nullable=True)
    note_type = Column(String(255), nullable=True)
    article_genres = Column(JSON, nullable=False, default=list)
    permanent_tags = Column(JSON, nullable=False, default=list)
    deadline = Column(UTCDateTime(), nullable=True)
    space_name = Column(String(255), nullable=True)
    url = Column(Text, nullable=True)
    bookmark_url = Column(Text, nullable=True)
    updated_at = Column(UTCDateTime(), nullable=False)
    created_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index('idx_tasks_status_timestamp', 'status', 'timestamp'),
    )

    def __repr__(self) -> str:
        return f"<TaskRecord {self.notion_id} {self.status.value if self.status else None} {self.name!r}>"


class Credential(Base):
    """Model for credentials table."""
    __tablename__ = 'credentials'

    user_id = Column(String(255), primary_key=True)
    notion_api_token = Column(Text, nullable=False)    # Encrypted
    notion_database_id = Column(String(255), nullable=False)
    notion_version = Column(String(32), nullable=False)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
