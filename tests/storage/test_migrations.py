"""Tests for the Alembic schema migrations."""

import asyncio
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config

from eth_token_tracker.storage.repos import TransferDTO
from eth_token_tracker.storage.store import Store
from factories import transfer_log

ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"


@pytest.fixture
def migrated_url(sqlite_url: str, monkeypatch: pytest.MonkeyPatch) -> str:
    """SQLite database file upgraded to the latest revision."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SQLALCHEMY_DATABASE_URL", raising=False)
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("sqlalchemy.url", sqlite_url)
    command.upgrade(config, "head")
    return sqlite_url


async def _write_and_read(url: str, value: int) -> list[TransferDTO]:
    store = Store.from_url(url)
    try:
        await store.write_batch([transfer_log(value=value)])
        return await store.get_transfers()
    finally:
        await store.close()


class TestUpgradeHead:
    def test_uint256_value_is_exact(self, migrated_url: str) -> None:
        value = 2**255 + 7

        rows = asyncio.run(_write_and_read(migrated_url, value))

        assert [r.value for r in rows] == [value]
