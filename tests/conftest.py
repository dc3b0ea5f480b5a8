"""
Pytest fixtures for the conversation store tests.
Every fixture works inside tmp_path and uses a configured master key, so the
OS keyring is never touched.
"""

import os
import sqlite3

import pytest
import pytest_asyncio

from chatstore.config import Settings
from chatstore.services.conversation_store import ConversationStore
from chatstore.services.crypto import b64e
from chatstore.services.keystore import KeyManager
from chatstore.services.message_crypto import ContentCipher
from chatstore.services.secret_protector import SecretProtector


def make_settings(data_dir, **overrides) -> Settings:
    values = {
        "data_dir": data_dir,
        "secret_backend": "master_key",
        "master_key": b64e(os.urandom(32)),
        "profile_identity": "alice",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def store_settings(tmp_path):
    """Settings for an isolated profile directory."""
    return make_settings(tmp_path / "profile")


@pytest.fixture
def protector(store_settings):
    return SecretProtector(store_settings)


@pytest.fixture
def key_manager(store_settings, protector):
    return KeyManager(store_settings.key_path, protector)


@pytest.fixture
def cipher(key_manager):
    return ContentCipher(key_manager)


@pytest_asyncio.fixture
async def store(store_settings):
    """A ready conversation store, closed after the test."""
    conv_store = ConversationStore(store_settings)
    await conv_store.ensure_ready()
    yield conv_store
    await conv_store.close()


@pytest.fixture
def raw_db(store_settings):
    """Direct sqlite3 access to the store's database file, as an older build would have."""
    connections = []

    def _open():
        conn = sqlite3.connect(str(store_settings.database_path))
        conn.row_factory = sqlite3.Row
        connections.append(conn)
        return conn

    yield _open
    for conn in connections:
        conn.close()
