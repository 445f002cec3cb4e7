"""Sync Service - FastAPI application."""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import date as date_type, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from sqlalchemy import text

from shared.config import get_credential_source, get_env, get_notion_config
from shared.credentials import EnvironmentCredentialProvider, StoredCredentialProvider
from shared.dates import ensure_aware, tokyo_midnight, utc_now
from shared.db_operations import TaskStore
from shared.edit_changes import TaskEditDraft
from shared.encryption import EncryptionService
from shared.models import TaskPriority, TaskScope, TaskSnapshot, TaskStatus, TaskTimeslot, TaskType
from services.notion_gateway.client import NotionTaskClient
from services.sync_service.notifications import NotificationService
from services.sync_service.orchestrator import TaskSyncService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
task_store: Optional[TaskStore] = None
notion_task_client: Optional[NotionTaskClient] = None
sync_service: Optional[TaskSyncService] = None


def build_credential_provider(store: TaskStore):
    """Pick the credential provider named by CREDENTIAL_SOURCE."""
    if get_credential_source() == "database":
        return StoredCredentialProvider(store, EncryptionService())
    return EnvironmentCredentialProvider()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global task_store, notion_task_client, sync_service

    logger.info("Sync Service starting up...")

    task_store = TaskStore()
    task_store.create_tables()
    logger.info("Task cache initialized")

    notion_task_client = NotionTaskClient(timeout_ms=get_notion_config()["timeout_ms"])
    sync_service = TaskSyncService(
        store=task_store,
        client=notion_task_client,
        credential_provider=build_credential_provider(task_store),
        notification_service=NotificationService()
    )
    logger.info("Sync engine initialized")

    yield

    # Cleanup
    await sync_service.wait_for_pending()
    await notion_task_client.aclose()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Sync Service",
    description="Keeps a local task cache in step with a Notion task database",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


def get_sync_service() -> TaskSyncService:
    if sync_service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync service is not initialized"
        )
    return sync_service


# Request/Response models
class TaskResponse(BaseModel):
    """Cached task as exposed over HTTP."""
    notion_id: str
    name: str
    status: TaskStatus
    memo: Optional[str] = None
    timestamp: Optional[datetime] = None
    timeslot: Optional[TaskTimeslot] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    priority: Optional[TaskPriority] = None
    type: Optional[TaskType] = None
    note_type: Optional[str] = None
    project_ids: List[str] = []
    article_genres: List[str] = []
    permanent_tags: List[str] = []
    deadline: Optional[datetime] = None
    space_name: Optional[str] = None
    url: Optional[str] = None
    bookmark_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_snapshot(cls, snapshot: TaskSnapshot) -> "TaskResponse":
        return cls(**{name: getattr(snapshot, name) for name in cls.model_fields})


class StatusResponse(BaseModel):
    """Observable sync engine state."""
    is_syncing: bool
    last_error: Optional[str] = None


class RefreshRequest(BaseModel):
    """Request model for a refresh; the day defaults to today (JST)."""
    date: Optional[date_type] = None


class MutationResponse(BaseModel):
    """Outcome of an optimistic mutation."""
    task: Optional[TaskResponse] = None
    scheduled: bool
    remote_ok: Optional[bool] = None
    last_error: Optional[str] = None


class AssignRequest(BaseModel):
    priority: Optional[TaskPriority] = None
    timeslot: Optional[TaskTimeslot] = None


class TaskEditRequest(BaseModel):
    """Desired values; omitted fields keep their cached value, null clears."""
    name: Optional[str] = None
    memo: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    timeslot: Optional[TaskTimeslot] = None
    type: Optional[TaskType] = None
    timestamp: Optional[datetime] = None
    deadline: Optional[datetime] = None

    @field_validator("timestamp", "deadline")
    @classmethod
    def read_naive_as_tokyo(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Date-times sent without an offset are Tokyo wall-clock time."""
        return ensure_aware(v) if v is not None else v


def _state(service: TaskSyncService) -> StatusResponse:
    return StatusResponse(is_syncing=service.is_syncing, last_error=service.last_error)


def _require_task(service: TaskSyncService, task_id: str) -> TaskSnapshot:
    snapshot = service.store.get(task_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id} not found"
        )
    return snapshot


async def _mutation_result(service: TaskSyncService, task_id: str, leg, wait: bool) -> MutationResponse:
    remote_ok = None
    if leg is not None and wait:
        remote_ok = await leg
    snapshot = service.store.get(task_id)
    return MutationResponse(
        task=TaskResponse.from_snapshot(snapshot) if snapshot is not None else None,
        scheduled=leg is not None,
        remote_ok=remote_ok,
        last_error=service.last_error
    )


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    if task_store is not None:
        try:
            with task_store.get_session() as session:
                session.execute(text("SELECT 1"))
            db_healthy = True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")

    return {
        "status": "healthy" if db_healthy else "degraded",
        "service": "sync_service",
        "version": "0.1.0",
        "dependencies": {
            "database": "up" if db_healthy else "down"
        }
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Sync Service",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/status", response_model=StatusResponse)
async def get_status(service: TaskSyncService = Depends(get_sync_service)):
    return _state(service)


@app.delete("/status/error", response_model=StatusResponse)
async def dismiss_error(service: TaskSyncService = Depends(get_sync_service)):
    service.dismiss_error()
    return _state(service)


@app.get("/tasks", response_model=List[TaskResponse])
async def list_tasks(
    scope: TaskScope = Query(...),
    date: Optional[date_type] = Query(None),
    service: TaskSyncService = Depends(get_sync_service)
):
    """
    List the cached tasks of one scope.

    Args:
        scope: inbox, today_todo, today_completed, in_progress or overdue
        date: Day of interest (yyyy-MM-dd, JST); defaults to today

    Returns:
        Tasks in scope-specific order
    """
    reference = tokyo_midnight(date) if date is not None else utc_now()
    return [TaskResponse.from_snapshot(task) for task in service.store.fetch(scope, reference)]


@app.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, service: TaskSyncService = Depends(get_sync_service)):
    return TaskResponse.from_snapshot(_require_task(service, task_id))


@app.post("/sync/refresh", response_model=StatusResponse)
async def refresh(request: Optional[RefreshRequest] = None, service: TaskSyncService = Depends(get_sync_service)):
    """
    Pull the day's tasks from Notion into the cache.

    The call returns once the refresh (or the one already in flight) is
    done; failures are reported through ``last_error``.
    """
    target = None
    if request is not None and request.date is not None:
        target = tokyo_midnight(request.date)

    logger.info(f"Received refresh request for {request.date if request and request.date else 'today'}")
    await service.refresh(target)
    return _state(service)


@app.post("/tasks/{task_id}/start", response_model=MutationResponse)
async def start_task(task_id: str, wait: bool = False, service: TaskSyncService = Depends(get_sync_service)):
    _require_task(service, task_id)
    leg = await service.start_task(task_id)
    return await _mutation_result(service, task_id, leg, wait)


@app.post("/tasks/{task_id}/complete", response_model=MutationResponse)
async def complete_task(task_id: str, wait: bool = False, service: TaskSyncService = Depends(get_sync_service)):
    _require_task(service, task_id)
    leg = await service.complete_task(task_id)
    return await _mutation_result(service, task_id, leg, wait)


@app.post("/tasks/{task_id}/cancel", response_model=MutationResponse)
async def cancel_task(task_id: str, wait: bool = False, service: TaskSyncService = Depends(get_sync_service)):
    _require_task(service, task_id)
    leg = await service.cancel_task(task_id)
    return await _mutation_result(service, task_id, leg, wait)


@app.post("/tasks/{task_id}/trash", response_model=MutationResponse)
async def trash_task(task_id: str, wait: bool = False, service: TaskSyncService = Depends(get_sync_service)):
    _require_task(service, task_id)
    leg = await service.trash_task(task_id)
    return await _mutation_result(service, task_id, leg, wait)


@app.post("/tasks/{task_id}/next-action", response_model=MutationResponse)
async def convert_to_next_action(task_id: str, wait: bool = False, service: TaskSyncService = Depends(get_sync_service)):
    _require_task(service, task_id)
    leg = await service.convert_to_next_action(task_id)
    return await _mutation_result(service, task_id, leg, wait)


@app.post("/tasks/{task_id}/assign", response_model=MutationResponse)
async def assign_next_action(
    task_id: str,
    request: Optional[AssignRequest] = None,
    wait: bool = False,
    service: TaskSyncService = Depends(get_sync_service)
):
    """Set priority/timeslot if given, then convert the task to a NextAction."""
    _require_task(service, task_id)
    request = request or AssignRequest()
    leg = await service.assign_next_action(task_id, priority=request.priority, timeslot=request.timeslot)
    return await _mutation_result(service, task_id, leg, wait)


@app.patch("/tasks/{task_id}", response_model=MutationResponse)
async def edit_task(
    task_id: str,
    request: TaskEditRequest,
    wait: bool = False,
    service: TaskSyncService = Depends(get_sync_service)
):
    """
    Edit a task by desired values.

    The desired values are diffed against the cached task and only the
    differing properties are written, locally and in Notion.
    """
    current = _require_task(service, task_id)
    values = request.model_dump(exclude_unset=True)
    if values.get("status", current.status) is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="status cannot be cleared"
        )

    draft = TaskEditDraft.from_task(current).with_changes(**values)
    leg = await service.edit_task(task_id, draft)
    return await _mutation_result(service, task_id, leg, wait)


if __name__ == "__main__":
    import uvicorn

    port = int(get_env("SYNC_SERVICE_PORT", "8005"))
    uvicorn.run(app, host="0.0.0.0", port=port)
