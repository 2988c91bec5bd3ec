"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from eth_token_tracker.storage.store import Store


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    """URL of a fresh SQLite database file."""
    return f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}"


@pytest.fixture
async def store(sqlite_url: str) -> AsyncIterator[Store]:
    """File-backed SQLite store with the schema created."""
    store = Store.from_url(sqlite_url)
    await store.init_schema()
    yield store
    await store.close()
