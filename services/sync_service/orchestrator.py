"""Sync orchestration between the local task cache and Notion.

``TaskSyncService`` owns three flows:

- ``refresh``: single-flight, paginated pull of the combined daily filter,
  merged page by page into the cache and followed by a prune of tasks that
  left every locally relevant scope;
- optimistic mutations: the local write happens immediately, the Notion
  patch runs as a background task and a failure restores the checkpoint
  captured before the write;
- observable state: ``is_syncing`` and ``last_error``.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from shared.dates import day_string, isoformat_tokyo, start_of_tokyo_day, utc_now
from shared.edit_changes import UNCHANGED, FieldUpdate, TaskEditChanges, TaskEditDraft, diff_task_edit
from shared.exceptions import TaskSyncError
from shared.models import NotionCredentials, TaskPriority, TaskSnapshot, TaskStatus, TaskTimeslot, TaskType
from shared.scope_matcher import (
    PropertyName,
    combined_daily_filter,
    is_inbox_candidate,
    is_overdue_candidate,
    is_same_day,
)
from services.notion_gateway.client import QUERY_PAGE_SIZE
from services.notion_gateway.mapper import NotionTaskMapper

logger = logging.getLogger(__name__)

MISSING_CREDENTIALS_MESSAGE = "Missing Notion credentials."
TASK_NOT_FOUND_MESSAGE = "Failed to locate task."


# Notion property payloads

def status_property(status: TaskStatus) -> Dict[str, Any]:
    return {"status": {"name": status.value}}


def select_property(name: Optional[str]) -> Dict[str, Any]:
    if name is None:
        return {"select": None}
    return {"select": {"name": name}}


def date_property(value: datetime) -> Dict[str, Any]:
    return {"date": {"start": isoformat_tokyo(value)}}


def day_property(value: datetime) -> Dict[str, Any]:
    return {"date": {"start": day_string(value)}}


def null_date_property() -> Dict[str, Any]:
    return {"date": None}


def _text_objects(content: str) -> List[Dict[str, Any]]:
    return [{"type": "text", "text": {"content": content}}]


def title_property(content: str) -> Dict[str, Any]:
    return {"title": _text_objects(content)}


def rich_text_property(content: Optional[str]) -> Dict[str, Any]:
    if not content:
        return {"rich_text": []}
    return {"rich_text": _text_objects(content)}


def _enum_name(value: Any) -> Optional[str]:
    return value.value if value is not None else None


def properties_from_changes(changes: TaskEditChanges) -> Dict[str, Any]:
    """
    Build the Notion property patch for a change-set.

    Only fields marked Set or Clear are included. Clearing a select or a
    date sends an explicit null; clearing the memo sends an empty rich text
    array. Name and status cannot be cleared.

    Args:
        changes: Change-set to translate

    Returns:
        Property patch keyed by Notion property name
    """
    properties: Dict[str, Any] = {}

    if changes.name.is_set and changes.name.value:
        properties[PropertyName.NAME] = title_property(changes.name.value)

    if changes.memo.has_change:
        properties[PropertyName.MEMO] = rich_text_property(changes.memo.resolve(None))

    if changes.status.is_set and changes.status.value is not None:
        properties[PropertyName.STATUS] = status_property(changes.status.value)

    selects = (
        (PropertyName.PRIORITY, changes.priority),
        (PropertyName.TIMESLOT, changes.timeslot),
        (PropertyName.TYPE, changes.type),
    )
    for prop_name, update in selects:
        if update.has_change:
            properties[prop_name] = select_property(_enum_name(update.resolve(None)))

    if changes.timestamp.has_change:
        value = changes.timestamp.resolve(None)
        properties[PropertyName.TIMESTAMP] = day_property(value) if value else null_date_property()

    if changes.deadline.has_change:
        value = changes.deadline.resolve(None)
        properties[PropertyName.DEADLINE] = date_property(value) if value else null_date_property()

    return properties


@dataclass
class _TaskChain:
    """Remote legs scheduled for one task, run in FIFO order.

    ``generation`` moves on whenever a leg fails and rolls back; legs
    scheduled under an older generation had their local write undone by
    that rollback and are not sent.
    """
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0
    generation: int = 0


class TaskSyncService:
    """Keeps the local task cache and the Notion database in step."""

    def __init__(
        self,
        store,
        client,
        credential_provider,
        mapper: Optional[NotionTaskMapper] = None,
        notification_service=None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the sync service.

        Args:
            store: TaskStore holding the cached tasks
            client: NotionTaskClient used for every remote call
            credential_provider: Object with current_credentials()
            mapper: Page to snapshot mapper
            notification_service: Optional NotificationService for failures
            clock: Source of "now" (aware datetimes)
        """
        self.store = store
        self.client = client
        self.credential_provider = credential_provider
        self.mapper = mapper or NotionTaskMapper(clock=clock)
        self.notification_service = notification_service
        self.clock = clock

        self._is_syncing = False
        self._last_error: Optional[str] = None
        self._subscribers: List[Callable[["TaskSyncService"], None]] = []
        self._refresh_future: Optional[asyncio.Future] = None
        self._pending: Set[asyncio.Task] = set()
        self._task_chains: Dict[str, _TaskChain] = {}

    # Observable state

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def subscribe(self, callback: Callable[["TaskSyncService"], None]) -> Callable[[], None]:
        """
        Register a callback invoked after every state change.

        Returns:
            Function removing the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def dismiss_error(self) -> None:
        self._set_last_error(None)

    def _notify_subscribers(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self)
            except Exception:
                logger.exception("State subscriber raised")

    def _set_last_error(self, message: Optional[str]) -> None:
        if message == self._last_error:
            return
        self._last_error = message
        self._notify_subscribers()

    def _set_syncing(self, value: bool) -> None:
        if value == self._is_syncing:
            return
        self._is_syncing = value
        self._notify_subscribers()

    async def _report_failure(
        self,
        operation: str,
        message: str,
        task_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        self._set_last_error(message)
        if self.notification_service is not None:
            await self.notification_service.send_failure_notification(
                operation=operation,
                error_message=message,
                task_id=task_id,
                context=context
            )

    def _resolve_credentials(self) -> Optional[NotionCredentials]:
        try:
            credentials = self.credential_provider.current_credentials()
        except TaskSyncError as e:
            logger.error(f"Could not load Notion credentials: {e}")
            self._set_last_error(str(e))
            return None

        if credentials is None or not credentials.usable:
            logger.warning("Notion credentials are missing or blank")
            self._set_last_error(MISSING_CREDENTIALS_MESSAGE)
            return None
        return credentials

    # Refresh

    async def refresh(self, date: Optional[datetime] = None) -> None:
        """
        Pull the tasks relevant to ``date`` from Notion into the cache.

        Only one refresh runs at a time. A call made while another is in
        flight waits for that one to finish and returns without fetching.

        Args:
            date: Any instant within the target day; defaults to now
        """
        if self._refresh_future is not None:
            logger.info("Refresh already in flight; waiting for it")
            await asyncio.shield(self._refresh_future)
            return

        future = asyncio.get_running_loop().create_future()
        self._refresh_future = future
        try:
            await self._refresh(date or self.clock())
        finally:
            self._refresh_future = None
            if not future.done():
                future.set_result(None)

    async def _refresh(self, date: datetime) -> None:
        credentials = self._resolve_credentials()
        if credentials is None:
            return

        day = day_string(date)
        logger.info(f"Refreshing tasks for {day}")
        self._set_syncing(True)

        try:
            query_filter = combined_daily_filter(day)
            fetched_ids: Set[str] = set()
            cursor = None
            page_number = 0

            while True:
                page_number += 1
                page = await self.client.query_database(
                    credentials,
                    filter=query_filter,
                    page_size=QUERY_PAGE_SIZE,
                    cursor=cursor
                )

                # Last occurrence of an id within the page wins.
                mapped = {s.notion_id: s for s in self.mapper.to_snapshots(page.results)}
                snapshots = []
                for snapshot in mapped.values():
                    snapshots.append(await self._attach_bookmark(credentials, snapshot))

                self.store.upsert(snapshots)
                fetched_ids.update(mapped)
                logger.info(f"Merged page {page_number}: {len(snapshots)} tasks")

                if not page.has_more:
                    break
                cursor = page.next_cursor

            now = self.clock()
            pruned = self.store.prune(
                lambda task: self._is_prune_candidate(task, date, now),
                fetched_ids
            )
            logger.info(f"Refresh for {day} done: {len(fetched_ids)} fetched, {pruned} pruned")
            self._set_last_error(None)

        except asyncio.CancelledError:
            logger.info("Refresh cancelled")
            self._set_last_error(None)
            raise
        except TaskSyncError as e:
            logger.error(f"Refresh for {day} failed: {e}")
            await self._report_failure("refresh", str(e), context={"day": day})
        except Exception as e:
            logger.error(f"Refresh for {day} failed with unexpected error: {e}", exc_info=True)
            await self._report_failure("refresh", str(e) or e.__class__.__name__, context={"day": day})
        finally:
            self._set_syncing(False)

    async def _attach_bookmark(self, credentials: NotionCredentials, snapshot: TaskSnapshot) -> TaskSnapshot:
        if snapshot.bookmark_url is not None:
            return snapshot

        try:
            bookmark = await self.client.first_bookmark_url(credentials, snapshot.notion_id)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            logger.info(f"Bookmark lookup cancelled for {snapshot.notion_id}")
            return snapshot
        except Exception as e:
            logger.warning(f"Bookmark lookup failed for {snapshot.notion_id}: {e}")
            return snapshot

        if bookmark is None:
            return snapshot
        return replace(snapshot, bookmark_url=bookmark)

    @staticmethod
    def _is_prune_candidate(task: Any, date: datetime, now: datetime) -> bool:
        if task.type == TaskType.TRASH:
            return False
        return (
            is_inbox_candidate(task)
            or is_overdue_candidate(task, now)
            or is_same_day(task.timestamp, date)
            or is_same_day(task.start_time, date)
            or is_same_day(task.end_time, date)
        )

    # Optimistic mutations

    async def start_task(self, task_id: str) -> Optional[asyncio.Task]:
        """Mark a task in progress now; schedules the Notion patch."""
        started_at = self.clock()

        def remote_properties(checkpoint: TaskSnapshot) -> Dict[str, Any]:
            properties = {
                PropertyName.STATUS: status_property(TaskStatus.IN_PROGRESS),
                PropertyName.START_TIME: date_property(started_at),
            }
            # First touch schedules an undated task for today.
            if checkpoint.timestamp is None:
                properties[PropertyName.TIMESTAMP] = day_property(started_at)
            return properties

        return await self._mutate(
            task_id,
            "start",
            lambda checkpoint: self.store.start_task(task_id, started_at),
            remote_properties
        )

    async def complete_task(self, task_id: str) -> Optional[asyncio.Task]:
        """Mark a task complete now and move it onto today."""
        completed_at = self.clock()

        def remote_properties(checkpoint: TaskSnapshot) -> Dict[str, Any]:
            return {
                PropertyName.STATUS: status_property(TaskStatus.COMPLETE),
                PropertyName.END_TIME: date_property(completed_at),
                PropertyName.TIMESTAMP: day_property(completed_at),
            }

        return await self._mutate(
            task_id,
            "complete",
            lambda checkpoint: self.store.complete_task(task_id, completed_at),
            remote_properties
        )

    async def cancel_task(self, task_id: str) -> Optional[asyncio.Task]:
        """Return a task to To Do, clearing its start and end times."""

        def remote_properties(checkpoint: TaskSnapshot) -> Dict[str, Any]:
            return {
                PropertyName.STATUS: status_property(TaskStatus.TODO),
                PropertyName.START_TIME: null_date_property(),
                PropertyName.END_TIME: null_date_property(),
            }

        return await self._mutate(
            task_id,
            "cancel",
            lambda checkpoint: self.store.cancel_task(task_id),
            remote_properties
        )

    async def trash_task(self, task_id: str) -> Optional[asyncio.Task]:
        changes = TaskEditChanges(
            type=FieldUpdate.set(TaskType.TRASH),
            status=FieldUpdate.set(TaskStatus.TODO),
        )

        def remote_properties(checkpoint: TaskSnapshot) -> Dict[str, Any]:
            return {
                PropertyName.TYPE: select_property(TaskType.TRASH.value),
                PropertyName.STATUS: status_property(TaskStatus.TODO),
            }

        return await self._mutate(
            task_id,
            "trash",
            lambda checkpoint: self.store.update(task_id, changes),
            remote_properties
        )

    async def convert_to_next_action(self, task_id: str) -> Optional[asyncio.Task]:
        """
        Turn a task into a NextAction.

        A task without a day, or with a day before today, is moved onto
        today as part of the conversion.
        """
        today = start_of_tokyo_day(self.clock())

        def needs_bump(checkpoint: TaskSnapshot) -> bool:
            return checkpoint.timestamp is None or checkpoint.timestamp < today

        def local_changes(checkpoint: TaskSnapshot) -> TaskEditChanges:
            return TaskEditChanges(
                type=FieldUpdate.set(TaskType.NEXT_ACTION),
                status=FieldUpdate.set(TaskStatus.TODO),
                timestamp=FieldUpdate.set(today) if needs_bump(checkpoint) else UNCHANGED,
            )

        def remote_properties(checkpoint: TaskSnapshot) -> Dict[str, Any]:
            properties = {
                PropertyName.TYPE: select_property(TaskType.NEXT_ACTION.value),
                PropertyName.STATUS: status_property(TaskStatus.TODO),
            }
            if needs_bump(checkpoint):
                properties[PropertyName.TIMESTAMP] = day_property(today)
            return properties

        return await self._mutate(
            task_id,
            "convert",
            lambda checkpoint: self.store.update(task_id, local_changes(checkpoint)),
            remote_properties
        )

    async def update_task(self, task_id: str, changes: TaskEditChanges) -> Optional[asyncio.Task]:
        """
        Apply a change-set locally and patch only the touched properties.

        An empty change-set does nothing at all.
        """
        if changes.is_empty:
            return None
        properties = properties_from_changes(changes)
        if not properties:
            return None

        return await self._mutate(
            task_id,
            "update",
            lambda checkpoint: self.store.update(task_id, changes),
            lambda checkpoint: properties
        )

    async def edit_task(self, task_id: str, draft: TaskEditDraft) -> Optional[asyncio.Task]:
        """Diff desired values against the cached task and apply the difference."""
        current = self._load(task_id)
        if current is None:
            return None
        changes = diff_task_edit(current, draft)
        if changes.is_empty:
            logger.debug(f"Edit of {task_id} changes nothing")
            return None
        return await self.update_task(task_id, changes)

    async def assign_next_action(
        self,
        task_id: str,
        priority: Optional[TaskPriority] = None,
        timeslot: Optional[TaskTimeslot] = None
    ) -> Optional[asyncio.Task]:
        """
        Promote a triaged task to an actionable NextAction.

        Priority and timeslot, when given, are set together with a bump of a
        missing or past day to today. That update must reach Notion before
        the conversion is attempted; if it fails, the conversion is skipped.

        Returns:
            The conversion's remote leg, or None when the flow stopped early
        """
        current = self._load(task_id)
        if current is None:
            return None

        today = start_of_tokyo_day(self.clock())
        changes = TaskEditChanges(
            priority=FieldUpdate.set(priority) if priority is not None else UNCHANGED,
            timeslot=FieldUpdate.set(timeslot) if timeslot is not None else UNCHANGED,
            timestamp=(
                FieldUpdate.set(today)
                if current.timestamp is None or current.timestamp < today
                else UNCHANGED
            ),
        )

        if not changes.is_empty:
            leg = await self.update_task(task_id, changes)
            if leg is None or not await leg:
                logger.warning(f"Assigning {task_id} stopped: preliminary update failed")
                return None

        return await self.convert_to_next_action(task_id)

    def _load(self, task_id: str) -> Optional[TaskSnapshot]:
        try:
            snapshot = self.store.snapshot(task_id)
        except TaskSyncError as e:
            logger.error(f"Could not load task {task_id}: {e}")
            self._set_last_error(str(e))
            return None
        if snapshot is None:
            logger.warning(f"Task {task_id} is not in the local cache")
            self._set_last_error(TASK_NOT_FOUND_MESSAGE)
        return snapshot

    async def _mutate(
        self,
        task_id: str,
        operation: str,
        apply_local: Callable[[TaskSnapshot], Any],
        remote_properties: Callable[[TaskSnapshot], Dict[str, Any]]
    ) -> Optional[asyncio.Task]:
        """
        Run the optimistic mutation protocol.

        1. resolve credentials, 2. capture a checkpoint, 3. write locally,
        4. schedule the Notion patch, which restores the checkpoint on failure.

        Returns:
            The scheduled remote leg, or None if the protocol stopped early
        """
        credentials = self._resolve_credentials()
        if credentials is None:
            return None

        checkpoint = self._load(task_id)
        if checkpoint is None:
            return None

        properties = remote_properties(checkpoint)
        try:
            apply_local(checkpoint)
        except TaskSyncError as e:
            logger.error(f"Local {operation} of {task_id} failed: {e}")
            self._set_last_error(str(e))
            return None

        logger.info(f"Applied {operation} to {task_id} locally; patching Notion")
        # Register synchronously so legs scheduled back to back share one chain.
        chain = self._task_chains.get(task_id)
        if chain is None:
            chain = self._task_chains[task_id] = _TaskChain()
        chain.users += 1
        leg = asyncio.create_task(
            self._run_remote(task_id, operation, credentials, checkpoint, properties, chain, chain.generation),
            name=f"notion-{operation}-{task_id}"
        )
        self._pending.add(leg)
        leg.add_done_callback(self._pending.discard)
        leg.add_done_callback(lambda _: self._release_chain(task_id, chain))
        return leg

    def _release_chain(self, task_id: str, chain: _TaskChain) -> None:
        chain.users -= 1
        if chain.users == 0 and self._task_chains.get(task_id) is chain:
            del self._task_chains[task_id]

    async def _run_remote(
        self,
        task_id: str,
        operation: str,
        credentials: NotionCredentials,
        checkpoint: TaskSnapshot,
        properties: Dict[str, Any],
        chain: _TaskChain,
        generation: int
    ) -> bool:
        """
        Send one scheduled patch to Notion, after any earlier legs for the task.

        A failure restores ``checkpoint``, which also undoes the local writes
        of every leg queued behind this one; those legs are then dropped
        instead of being sent.
        """
        try:
            async with chain.lock:
                if generation != chain.generation:
                    logger.warning(f"Skipping remote {operation} of {task_id}: an earlier patch failed and was rolled back")
                    return False
                # The row may have been archived in Notion; unarchiving is idempotent.
                await self.client.update_page(credentials, task_id, properties={}, archived=False)
                await self.client.update_page(credentials, task_id, properties=properties)
        except asyncio.CancelledError:
            logger.info(f"Remote {operation} of {task_id} cancelled; keeping local state")
            return True
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error(
                f"Remote {operation} of {task_id} failed, rolling back: {message}",
                exc_info=not isinstance(e, TaskSyncError)
            )
            self._rollback(task_id, checkpoint)
            chain.generation += 1
            await self._report_failure(
                operation,
                message,
                task_id=task_id,
                context={"properties": sorted(properties)}
            )
            return False

        logger.info(f"Remote {operation} of {task_id} succeeded")
        self._set_last_error(None)
        return True

    def _rollback(self, task_id: str, checkpoint: TaskSnapshot) -> None:
        try:
            self.store.overwrite(task_id, checkpoint)
        except TaskSyncError as e:
            logger.error(f"Failed to revert local state for {task_id}: {e}")

    async def wait_for_pending(self) -> None:
        """Wait until every scheduled remote leg has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
