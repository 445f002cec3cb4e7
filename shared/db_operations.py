"""Database operations for the local Notion task cache."""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set

from sqlalchemy import create_engine, func as sql_func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from shared.config import get_database_url
from shared.dates import DateBoundaries, start_of_tokyo_day
from shared.db_models import Base, Credential, TaskRecord
from shared.edit_changes import TaskEditChanges
from shared.exceptions import NotFoundError, StorageError
from shared.models import MAPPABLE_FIELDS, TaskScope, TaskSnapshot, TaskStatus, TaskType, priority_score
from shared.scope_matcher import matches

logger = logging.getLogger(__name__)

_DISTANT_PAST = datetime.min.replace(tzinfo=timezone.utc)

_LIST_FIELDS = ("project_ids", "article_genres", "permanent_tags")


def _copy_value(field_name: str, value):
    if field_name in _LIST_FIELDS:
        return list(value or [])
    return value


def to_snapshot(record: TaskRecord) -> TaskSnapshot:
    """Capture every field of a row as an immutable snapshot."""
    values = {name: _copy_value(name, getattr(record, name)) for name in MAPPABLE_FIELDS}
    return TaskSnapshot(notion_id=record.notion_id, **values)


def apply_snapshot(snapshot: TaskSnapshot, record: TaskRecord) -> None:
    """Overwrite every mappable field of a row from a snapshot."""
    for name in MAPPABLE_FIELDS:
        setattr(record, name, _copy_value(name, getattr(snapshot, name)))


def _sort_for_scope(scope: TaskScope, tasks: List[TaskSnapshot]) -> List[TaskSnapshot]:
    if scope == TaskScope.INBOX:
        return sorted(tasks, key=lambda t: t.created_at)
    if scope == TaskScope.TODAY_TODO:
        return sorted(tasks, key=lambda t: priority_score(t.priority), reverse=True)
    if scope == TaskScope.TODAY_COMPLETED:
        return sorted(tasks, key=lambda t: t.end_time or _DISTANT_PAST, reverse=True)
    if scope == TaskScope.IN_PROGRESS:
        return sorted(tasks, key=lambda t: t.start_time or _DISTANT_PAST)
    if scope == TaskScope.OVERDUE:
        return sorted(tasks, key=lambda t: t.timestamp or _DISTANT_PAST)
    raise ValueError(f"Unknown scope: {scope}")


class TaskStore:
    """Persistent keyed collection of cached tasks.

    Every public method runs in its own session and commits once, so a call
    either lands completely or not at all. SQLAlchemy failures surface as
    ``StorageError``.
    """

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False, bind=self.engine)

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        session = self.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Task store failed to {action}: {e}")
            raise StorageError(f"Failed to {action}: {e}") from e
        finally:
            session.close()

    @staticmethod
    def _find(session: Session, task_id: str) -> Optional[TaskRecord]:
        stmt = select(TaskRecord).where(TaskRecord.notion_id == task_id)
        return session.execute(stmt).scalar_one_or_none()

    def _require(self, session: Session, task_id: str) -> TaskRecord:
        record = self._find(session, task_id)
        if record is None:
            raise NotFoundError(task_id)
        return record

    # Scope queries

    def fetch(self, scope: TaskScope, date: datetime) -> List[TaskSnapshot]:
        """
        Get the non-trashed tasks of a scope for the Tokyo day of ``date``.

        Args:
            scope: Scope to list
            date: Any instant within the day of interest

        Returns:
            Snapshots in scope-specific order
        """
        with self._transaction("fetch tasks") as session:
            stmt = select(TaskRecord).order_by(TaskRecord.created_at.asc(), TaskRecord.id.asc())
            records = session.execute(stmt).scalars().all()
            tasks = [to_snapshot(record) for record in records if record.type != TaskType.TRASH]

        boundaries = DateBoundaries.for_date(date)
        filtered = [task for task in tasks if matches(task, scope, date, boundaries)]
        logger.debug(f"{scope.value}: {len(filtered)} of {len(tasks)} cached tasks")
        return _sort_for_scope(scope, filtered)

    def all_tasks(self) -> List[TaskSnapshot]:
        """Get every cached task, trashed ones included."""
        with self._transaction("list tasks") as session:
            stmt = select(TaskRecord).order_by(TaskRecord.created_at.asc(), TaskRecord.id.asc())
            return [to_snapshot(record) for record in session.execute(stmt).scalars().all()]

    def count_tasks(self) -> int:
        with self._transaction("count tasks") as session:
            return session.execute(select(sql_func.count()).select_from(TaskRecord)).scalar()

    # Merge

    def upsert(self, snapshots: Iterable[TaskSnapshot]) -> int:
        """
        Insert or overwrite tasks from snapshots, keyed by Notion id.

        Applying the same snapshots again leaves the store unchanged. When an
        id repeats within one call, the last snapshot wins.

        Args:
            snapshots: Mapped Notion pages

        Returns:
            Number of snapshots applied
        """
        snapshots = list(snapshots)
        if not snapshots:
            return 0

        with self._transaction("upsert tasks") as session:
            ids = {snapshot.notion_id for snapshot in snapshots}
            stmt = select(TaskRecord).where(TaskRecord.notion_id.in_(ids))
            existing: Dict[str, TaskRecord] = {
                record.notion_id: record for record in session.execute(stmt).scalars().all()
            }

            inserted = 0
            for snapshot in snapshots:
                record = existing.get(snapshot.notion_id)
                if record is None:
                    record = TaskRecord(notion_id=snapshot.notion_id)
                    session.add(record)
                    existing[snapshot.notion_id] = record
                    inserted += 1
                apply_snapshot(snapshot, record)

        logger.info(f"Upserted {len(snapshots)} tasks ({inserted} new)")
        return len(snapshots)

    def prune(self, predicate: Callable[[TaskRecord], bool], keep_ids: Set[str]) -> int:
        """
        Delete tasks matching ``predicate`` whose id is not in ``keep_ids``.

        Args:
            predicate: Selects prune candidates
            keep_ids: Ids seen in the latest remote fetch

        Returns:
            Number of tasks deleted
        """
        with self._transaction("prune tasks") as session:
            records = session.execute(select(TaskRecord)).scalars().all()
            doomed = [r for r in records if r.notion_id not in keep_ids and predicate(r)]
            for record in doomed:
                session.delete(record)

        if doomed:
            logger.info(f"Pruned {len(doomed)} stale tasks")
        return len(doomed)

    # Targeted mutations

    def start_task(self, task_id: str, at: datetime) -> TaskSnapshot:
        with self._transaction("start task") as session:
            record = self._require(session, task_id)
            record.status = TaskStatus.IN_PROGRESS
            record.start_time = at
            return to_snapshot(record)

    def complete_task(self, task_id: str, at: datetime) -> TaskSnapshot:
        """Mark complete and move the task onto the Tokyo day it was finished."""
        with self._transaction("complete task") as session:
            record = self._require(session, task_id)
            record.status = TaskStatus.COMPLETE
            record.end_time = at
            record.timestamp = start_of_tokyo_day(at)
            return to_snapshot(record)

    def cancel_task(self, task_id: str) -> TaskSnapshot:
        with self._transaction("cancel task") as session:
            record = self._require(session, task_id)
            record.status = TaskStatus.TODO
            record.start_time = None
            record.end_time = None
            return to_snapshot(record)

    def update(self, task_id: str, changes: TaskEditChanges) -> TaskSnapshot:
        """Apply a change-set to one task."""
        with self._transaction("update task") as session:
            record = self._require(session, task_id)
            changes.apply_to(record)
            return to_snapshot(record)

    def remove(self, task_id: str) -> bool:
        with self._transaction("remove task") as session:
            record = self._find(session, task_id)
            if record is None:
                return False
            session.delete(record)
            return True

    def get(self, task_id: str) -> Optional[TaskSnapshot]:
        with self._transaction("load task") as session:
            record = self._find(session, task_id)
            return to_snapshot(record) if record is not None else None

    def snapshot(self, task_id: str) -> Optional[TaskSnapshot]:
        """Capture a rollback checkpoint for a task, or None if it is not cached."""
        return self.get(task_id)

    def overwrite(self, task_id: str, snapshot: TaskSnapshot) -> TaskSnapshot:
        """
        Restore a task from a checkpoint.

        A task deleted since the checkpoint was taken is recreated.

        Args:
            task_id: Id of the task to restore
            snapshot: Checkpoint captured earlier

        Returns:
            The restored state
        """
        with self._transaction("restore task") as session:
            record = self._find(session, task_id)
            if record is None:
                record = TaskRecord(notion_id=task_id)
                session.add(record)
            apply_snapshot(snapshot, record)
            return to_snapshot(record)

    # Credential Management Operations

    def store_credentials(
        self,
        user_id: str,
        notion_api_token: str,
        notion_database_id: str,
        notion_version: str,
        encryption_service: 'EncryptionService'
    ) -> None:
        """
        Store or update Notion credentials with the token encrypted.

        Args:
            user_id: The user ID
            notion_api_token: Notion API token (will be encrypted)
            notion_database_id: Notion database ID
            notion_version: Notion-Version header value
            encryption_service: Encryption service for encrypting the token
        """
        with self._transaction("store credentials") as session:
            encrypted_token = encryption_service.encrypt(notion_api_token)

            credential = session.get(Credential, user_id)
            if credential:
                credential.notion_api_token = encrypted_token
                credential.notion_database_id = notion_database_id
                credential.notion_version = notion_version
            else:
                session.add(Credential(
                    user_id=user_id,
                    notion_api_token=encrypted_token,
                    notion_database_id=notion_database_id,
                    notion_version=notion_version
                ))

    def get_credentials(
        self,
        user_id: str,
        encryption_service: 'EncryptionService'
    ) -> Optional[dict]:
        """
        Retrieve and decrypt Notion credentials.

        Args:
            user_id: The user ID
            encryption_service: Encryption service for decrypting the token

        Returns:
            Dictionary with decrypted credentials or None if not found
        """
        with self._transaction("load credentials") as session:
            credential = session.get(Credential, user_id)

            if not credential:
                return None

            return {
                'user_id': credential.user_id,
                'notion_api_token': encryption_service.decrypt(credential.notion_api_token),
                'notion_database_id': credential.notion_database_id,
                'notion_version': credential.notion_version,
                'updated_at': credential.updated_at
            }

    def delete_credentials(self, user_id: str) -> bool:
        """
        Delete stored credentials.

        Returns:
            True if credentials were deleted, False if not found
        """
        with self._transaction("delete credentials") as session:
            credential = session.get(Credential, user_id)
            if credential:
                session.delete(credential)
                return True
            return False
