"""Transactional token-transfer store.

The Store is the only writer-facing surface of the storage layer. Each write
or removal runs inside its own transaction, so a batch is either fully
recorded or not recorded at all. Reads open short-lived sessions of their own
and can run concurrently with the single writer.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from eth_token_tracker.ingestor.decoder import decode_transfer, is_transfer_shaped
from eth_token_tracker.storage.database import (
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from eth_token_tracker.storage.repos import (
    QueryPagination,
    TokenRepository,
    TransferDTO,
    TransferRepository,
    TransfersFilter,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

    from eth_token_tracker.ingestor.decoder import DecodedTransfer
    from eth_token_tracker.ingestor.models import Log

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a store operation fails (connectivity, constraint, closed store)."""


class Store:
    """Relational store for tokens and transfers.

    Example:
        ```python
        store = Store.from_url("postgresql+asyncpg://postgres@localhost/postgres")
        await store.init_schema()

        await store.write_batch(event.added_logs)
        tokens = await store.list_tokens(QueryPagination(limit=10))

        await store.close()
        ```
    """

    def __init__(self, engine: AsyncEngine) -> None:
        """Initialize the store.

        Args:
            engine: Async engine the store takes exclusive ownership of.
        """
        self._engine = engine
        self._session_factory = create_async_session_factory(engine)
        self._closed = False

    @classmethod
    def from_url(cls, database_url: str, **engine_kwargs: Any) -> Store:
        return cls(create_async_db_engine(database_url, **engine_kwargs))

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreError("store is closed")

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Session with a transaction that commits on success and rolls back on error."""
        self._ensure_open()
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            raise StoreError(f"{operation} failed: {e}") from e

    async def init_schema(self) -> None:
        """Create the schema if it is not present yet."""
        self._ensure_open()
        try:
            await init_async_db(self._engine)
        except SQLAlchemyError as e:
            raise StoreError(f"schema bootstrap failed: {e}") from e

    async def write_batch(self, logs: Sequence[Log]) -> int:
        """Record every transfer-shaped log of a batch in one transaction.

        Logs without exactly three topics are skipped. Decoding happens before
        the transaction opens, so a malformed log leaves the store untouched.

        Returns:
            Number of transfers newly recorded (already recorded log keys are skipped).

        Raises:
            DecodeError: If a transfer-shaped log cannot be decoded.
            StoreError: If the transaction fails.
        """
        transfers: list[DecodedTransfer] = []
        for log in logs:
            if not is_transfer_shaped(log):
                logger.debug(
                    "Skipping non-standard log %s:%d (%d topics)",
                    log.transaction_hash,
                    log.log_index,
                    len(log.topics),
                )
                continue
            transfers.append(decode_transfer(log))

        if not transfers:
            return 0

        async with self._transaction("write_batch") as session:
            await TokenRepository(session).ensure_many(t.token for t in transfers)
            written = await TransferRepository(session).insert_many(transfers)
        logger.debug("Recorded %d transfers from %d logs", written, len(logs))
        return written

    async def remove_by_block(self, block_hash: str) -> int:
        """Delete all transfers of a block. Tokens are left in place.

        Returns:
            Number of transfers deleted (0 for an unknown block hash).
        """
        async with self._transaction("remove_by_block") as session:
            deleted = await TransferRepository(session).delete_by_block(block_hash)
        logger.debug("Removed %d transfers of block %s", deleted, block_hash)
        return deleted

    async def list_tokens(self, pagination: QueryPagination | None = None) -> list[str]:
        """List registered token addresses in registration order."""
        self._ensure_open()
        try:
            async with self._session_factory() as session:
                return await TokenRepository(session).list_ids(pagination or QueryPagination())
        except SQLAlchemyError as e:
            raise StoreError(f"list_tokens failed: {e}") from e

    async def get_transfers(self, transfers_filter: TransfersFilter | None = None) -> list[TransferDTO]:
        """Get transfers matching a filter."""
        self._ensure_open()
        try:
            async with self._session_factory() as session:
                return await TransferRepository(session).find(transfers_filter or TransfersFilter())
        except SQLAlchemyError as e:
            raise StoreError(f"get_transfers failed: {e}") from e

    async def close(self) -> None:
        """Dispose of the engine. Later calls are no-ops."""
        if self._closed:
            logger.debug("Store already closed")
            return
        self._closed = True
        await self._engine.dispose()
        logger.info("Store closed")
