"""Tests for the Notion credential providers."""

import os
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from shared.config import DEFAULT_NOTION_VERSION
from shared.credentials import (
    EnvironmentCredentialProvider,
    StaticCredentialProvider,
    StoredCredentialProvider,
)
from shared.db_operations import TaskStore
from shared.encryption import EncryptionService


@pytest.fixture
def store():
    db = TaskStore(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


def test_static_provider_trims_values():
    credentials = StaticCredentialProvider(" secret_abc ", " db123 ").current_credentials()

    assert credentials.token == "secret_abc"
    assert credentials.database_id == "db123"
    assert credentials.notion_version == DEFAULT_NOTION_VERSION


def test_static_provider_blank_token_is_unusable():
    assert StaticCredentialProvider("  ", "db123").current_credentials() is None


def test_environment_provider():
    env = {"NOTION_API_TOKEN": "secret_env", "NOTION_DATABASE_ID": "db_env", "NOTION_VERSION": "2022-06-28"}
    with patch.dict(os.environ, env, clear=True):
        credentials = EnvironmentCredentialProvider().current_credentials()

    assert credentials.token == "secret_env"
    assert credentials.database_id == "db_env"


def test_environment_provider_missing_values():
    with patch.dict(os.environ, {}, clear=True):
        assert EnvironmentCredentialProvider().current_credentials() is None


def test_stored_provider_round_trip(store):
    provider = StoredCredentialProvider(store, EncryptionService())

    assert provider.current_credentials() is None

    provider.save("secret_db", "db_stored")
    credentials = provider.current_credentials()
    assert credentials.token == "secret_db"
    assert credentials.database_id == "db_stored"

    assert provider.clear() is True
    assert provider.current_credentials() is None


def test_stored_provider_with_rotated_key(store):
    StoredCredentialProvider(store, EncryptionService(Fernet.generate_key().decode())).save("secret", "db")

    provider = StoredCredentialProvider(store, EncryptionService(Fernet.generate_key().decode()))

    assert provider.current_credentials() is None
