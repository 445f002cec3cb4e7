"""Shared configuration utilities."""

import os
from typing import Optional


DEFAULT_NOTION_VERSION = "2022-06-28"


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation."""
    value = os.getenv(key, default)
    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_database_url() -> str:
    """Get the task cache database URL from environment."""
    return get_env(
        "TASK_DATABASE_URL",
        "sqlite:///tasks.sqlite3",
        required=False
    )


def get_notion_config() -> dict:
    """Get Notion API configuration from environment."""
    return {
        "api_token": get_env("NOTION_API_TOKEN", ""),
        "database_id": get_env("NOTION_DATABASE_ID", ""),
        "notion_version": get_env("NOTION_VERSION", DEFAULT_NOTION_VERSION),
        "timeout_ms": int(get_env("NOTION_TIMEOUT_MS", "60000")),
    }


def get_credential_source() -> str:
    """Get where Notion credentials are read from: 'env' or 'database'."""
    source = get_env("CREDENTIAL_SOURCE", "env").strip().lower()
    if source not in ("env", "database"):
        raise ValueError(f"Unsupported CREDENTIAL_SOURCE: {source}")
    return source
