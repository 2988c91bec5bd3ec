"""Storage backend registry.

Backends are looked up by name in a registry object that the caller builds
and passes around; there is no module-level mutable table.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from eth_token_tracker.storage.database import url_dialect
from eth_token_tracker.storage.store import Store, StoreError

if TYPE_CHECKING:
    from eth_token_tracker.config import StorageSettings

logger = logging.getLogger(__name__)

StoreFactory = Callable[["StorageSettings"], Awaitable[Store]]


class UnknownBackendError(LookupError):
    """Raised when no factory is registered under a backend name."""


class StoreRegistry:
    """Maps backend names to async store factories.

    Example:
        ```python
        registry = default_registry()
        store = await registry.create("sqlite", settings.storage)
        ```
    """

    def __init__(self) -> None:
        self._factories: dict[str, StoreFactory] = {}

    def register(self, name: str, factory: StoreFactory) -> None:
        """Register a factory.

        Raises:
            ValueError: If ``name`` is already registered.
        """
        if name in self._factories:
            raise ValueError(f"storage backend '{name}' is already registered")
        self._factories[name] = factory

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    async def create(self, name: str, settings: StorageSettings) -> Store:
        """Build a ready-to-use store for ``name``.

        Raises:
            UnknownBackendError: If ``name`` is not registered.
        """
        factory = self._factories.get(name)
        if factory is None:
            raise UnknownBackendError(
                f"unknown storage backend '{name}' (available: {', '.join(self.names()) or 'none'})"
            )
        logger.info("Opening %s store", name)
        return await factory(settings)


def _sql_store_factory(dialect: str) -> StoreFactory:
    async def open_store(settings: StorageSettings) -> Store:
        actual = url_dialect(settings.url)
        if actual != dialect:
            raise StoreError(f"storage backend '{dialect}' cannot open a {actual} database URL")
        store = Store.from_url(settings.url)
        try:
            await store.init_schema()
        except Exception:
            await store.close()
            raise
        return store

    return open_store


def default_registry() -> StoreRegistry:
    """Registry with the built-in PostgreSQL and SQLite backends."""
    registry = StoreRegistry()
    registry.register("postgresql", _sql_store_factory("postgresql"))
    registry.register("sqlite", _sql_store_factory("sqlite"))
    return registry
