"""Credential providers feeding the sync service.

A provider returns ``NotionCredentials`` only when they are usable (token
and database id both non-blank); otherwise it returns None.
"""

import logging
from typing import Optional

from cryptography.fernet import InvalidToken

from shared.config import DEFAULT_NOTION_VERSION, get_notion_config
from shared.models import NotionCredentials

logger = logging.getLogger(__name__)


def _usable_or_none(credentials: NotionCredentials) -> Optional[NotionCredentials]:
    if not credentials.usable:
        return None
    return NotionCredentials(
        token=credentials.token.strip(),
        database_id=credentials.database_id.strip(),
        notion_version=credentials.notion_version.strip() or DEFAULT_NOTION_VERSION,
    )


class StaticCredentialProvider:
    """Fixed credentials, mostly for tests and scripts."""

    def __init__(self, token: str, database_id: str, notion_version: str = DEFAULT_NOTION_VERSION):
        self._credentials = NotionCredentials(token, database_id, notion_version)

    def current_credentials(self) -> Optional[NotionCredentials]:
        return _usable_or_none(self._credentials)


class EnvironmentCredentialProvider:
    """Reads NOTION_API_TOKEN / NOTION_DATABASE_ID / NOTION_VERSION on every call."""

    def current_credentials(self) -> Optional[NotionCredentials]:
        config = get_notion_config()
        return _usable_or_none(NotionCredentials(
            token=config["api_token"] or "",
            database_id=config["database_id"] or "",
            notion_version=config["notion_version"] or DEFAULT_NOTION_VERSION,
        ))


class StoredCredentialProvider:
    """Credentials kept encrypted in the task cache database."""

    def __init__(self, store, encryption_service, user_id: str = "default"):
        """
        Args:
            store: TaskStore holding the credentials table
            encryption_service: EncryptionService used when they were stored
            user_id: Credential row to read
        """
        self.store = store
        self.encryption_service = encryption_service
        self.user_id = user_id

    def save(self, token: str, database_id: str, notion_version: str = DEFAULT_NOTION_VERSION) -> None:
        self.store.store_credentials(
            self.user_id,
            token.strip(),
            database_id.strip(),
            notion_version.strip() or DEFAULT_NOTION_VERSION,
            self.encryption_service
        )
        logger.info(f"Stored Notion credentials for {self.user_id}")

    def clear(self) -> bool:
        return self.store.delete_credentials(self.user_id)

    def current_credentials(self) -> Optional[NotionCredentials]:
        try:
            stored = self.store.get_credentials(self.user_id, self.encryption_service)
        except InvalidToken:
            logger.error(f"Stored Notion token for {self.user_id} cannot be decrypted with the current key")
            return None
        if not stored:
            return None
        return _usable_or_none(NotionCredentials(
            token=stored['notion_api_token'],
            database_id=stored['notion_database_id'],
            notion_version=stored['notion_version'],
        ))
