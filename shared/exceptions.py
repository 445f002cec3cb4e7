"""Error taxonomy for the task sync application.

``str(error)`` is the human-readable text surfaced as the sync service's
last error. Cancellation is never represented here; it stays
``asyncio.CancelledError``.
"""

from typing import Optional


class TaskSyncError(Exception):
    """Base class for all task sync errors."""


class CredentialError(TaskSyncError):
    """Usable Notion credentials are not available."""

    def __init__(self, message: str = "Missing Notion API credentials."):
        super().__init__(message)


class RemoteError(TaskSyncError):
    """Notion answered with a non-2xx status or a malformed payload."""

    def __init__(self, status_code: Optional[int] = None, body: str = "", message: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        if message is None:
            text = (body or "").strip()
            if status_code is None:
                message = "Received an invalid response from Notion."
            elif text:
                message = f"Notion API returned status {status_code}: {text}"
            else:
                message = f"Notion API returned status {status_code}."
        super().__init__(message)

    @classmethod
    def invalid_response(cls, detail: str = "") -> "RemoteError":
        message = "Received an invalid response from Notion."
        if detail:
            message = f"{message} ({detail})"
        return cls(status_code=None, body=detail, message=message)


class TransportError(TaskSyncError):
    """Network-level failure talking to Notion (including timeouts)."""


class StorageError(TaskSyncError):
    """The local task cache rejected a read or write."""


class NotFoundError(TaskSyncError):
    """A referenced task is not in the local cache."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} was not found in the local cache.")
