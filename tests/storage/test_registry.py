"""Tests for the storage backend registry."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from eth_token_tracker.config import StorageSettings
from eth_token_tracker.storage.registry import StoreRegistry, UnknownBackendError, default_registry
from eth_token_tracker.storage.store import Store, StoreError
from factories import TOKEN_A, transfer_log


@pytest.fixture
def sqlite_settings(sqlite_url: str) -> StorageSettings:
    return StorageSettings(STORAGE_BACKEND="sqlite", DATABASE_URL=sqlite_url)


class TestStoreRegistry:
    """Tests for StoreRegistry."""

    def test_register_and_list(self) -> None:
        registry = StoreRegistry()
        registry.register("memory", AsyncMock())

        assert registry.names() == ["memory"]
        assert "memory" in registry
        assert "postgresql" not in registry

    def test_duplicate_registration_rejected(self) -> None:
        registry = StoreRegistry()
        registry.register("memory", AsyncMock())

        with pytest.raises(ValueError):
            registry.register("memory", AsyncMock())

    @pytest.mark.asyncio
    async def test_unknown_backend(self, sqlite_settings: StorageSettings) -> None:
        with pytest.raises(UnknownBackendError, match="unknown storage backend 'mongodb'"):
            await StoreRegistry().create("mongodb", sqlite_settings)

    @pytest.mark.asyncio
    async def test_create_calls_factory(self, sqlite_settings: StorageSettings) -> None:
        store = MagicMock(spec=Store)
        factory = AsyncMock(return_value=store)
        registry = StoreRegistry()
        registry.register("memory", factory)

        assert await registry.create("memory", sqlite_settings) is store
        factory.assert_awaited_once_with(sqlite_settings)

    def test_registries_are_independent(self) -> None:
        first = default_registry()
        first.register("memory", AsyncMock())

        assert "memory" not in default_registry()


class TestDefaultRegistry:
    """Tests for the built-in backends."""

    def test_builtin_names(self) -> None:
        assert default_registry().names() == ["postgresql", "sqlite"]

    @pytest.mark.asyncio
    async def test_sqlite_store_is_ready(self, sqlite_settings: StorageSettings) -> None:
        store = await default_registry().create("sqlite", sqlite_settings)
        try:
            await store.write_batch([transfer_log()])
            assert await store.list_tokens() == [TOKEN_A]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_sqlite_backend_rejects_postgresql_url(self) -> None:
        settings = StorageSettings(
            STORAGE_BACKEND="sqlite",
            DATABASE_URL="postgresql+asyncpg://tracker@db:5432/tokens",
        )

        with pytest.raises(StoreError, match="storage backend 'sqlite' cannot open a postgresql"):
            await default_registry().create("sqlite", settings)

    @pytest.mark.asyncio
    async def test_postgresql_backend_rejects_sqlite_url(self, sqlite_settings: StorageSettings) -> None:
        with pytest.raises(StoreError, match="storage backend 'postgresql' cannot open a sqlite"):
            await default_registry().create("postgresql", sqlite_settings)
