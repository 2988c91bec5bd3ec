"""Repository pattern implementations for data access.

This module provides data access abstractions for tokens and transfers,
plus the filter and pagination model used by the read surface.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from eth_token_tracker.storage.models import TokenModel, TransferModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql import Select

    from eth_token_tracker.ingestor.decoder import DecodedTransfer

logger = logging.getLogger(__name__)

# Keeps multi-row INSERT statements under SQLite's bound-parameter limit.
INSERT_CHUNK_SIZE = 500


@dataclass(frozen=True)
class QueryPagination:
    """Limit/offset pagination. ``limit=0`` means no limit; the offset still applies."""

    limit: int = 0
    offset: int = 0

    def __post_init__(self) -> None:
        if self.limit < 0:
            raise ValueError("limit must be >= 0")
        if self.offset < 0:
            raise ValueError("offset must be >= 0")

    def apply(self, stmt: Select[Any]) -> Select[Any]:
        if self.limit:
            stmt = stmt.limit(self.limit)
        if self.offset:
            stmt = stmt.offset(self.offset)
        return stmt


@dataclass(frozen=True)
class TransfersFilter:
    """Conjunction of address-set predicates; an empty set matches everything."""

    from_addresses: tuple[str, ...] = ()
    to_addresses: tuple[str, ...] = ()
    tokens: tuple[str, ...] = ()
    pagination: QueryPagination = field(default_factory=QueryPagination)

    @classmethod
    def build(
        cls,
        *,
        from_addresses: Iterable[str] = (),
        to_addresses: Iterable[str] = (),
        tokens: Iterable[str] = (),
        limit: int = 0,
        offset: int = 0,
    ) -> TransfersFilter:
        return cls(
            from_addresses=tuple(a.lower() for a in from_addresses),
            to_addresses=tuple(a.lower() for a in to_addresses),
            tokens=tuple(t.lower() for t in tokens),
            pagination=QueryPagination(limit=limit, offset=offset),
        )


@dataclass
class TransferDTO:
    """Data transfer object for recorded transfers."""

    token: str
    from_address: str
    to_address: str
    value: int
    block_hash: str
    txn_hash: str
    log_index: int

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            token=model.token_id,
            from_address=model.from_addr,
            to_address=model.to_addr,
            value=model.value,
            block_hash=model.block_hash,
            txn_hash=model.txn_hash,
            log_index=model.log_index,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation; ``value`` is a decimal string."""
        return {
            "token": self.token,
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
            "block_hash": self.block_hash,
            "txn_hash": self.txn_hash,
            "log_index": self.log_index,
        }


def _insert_for(session: AsyncSession) -> Callable[..., Any]:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported database dialect for idempotent inserts: {dialect}")


def _chunks(rows: Sequence[dict[str, Any]], size: int) -> Iterable[Sequence[dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


class TokenRepository:
    """Repository for registered tokens."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def ensure_many(self, addresses: Iterable[str]) -> None:
        """Register tokens that are not yet known (insert-if-absent, idempotent)."""
        # dict keeps first-seen order so new tokens get sequence numbers in arrival order
        unique = list(dict.fromkeys(a.lower() for a in addresses))
        if not unique:
            return
        insert = _insert_for(self.session)
        for chunk in _chunks([{"id": a} for a in unique], INSERT_CHUNK_SIZE):
            stmt = insert(TokenModel).values(list(chunk))
            stmt = stmt.on_conflict_do_nothing(index_elements=["id"])
            await self.session.execute(stmt)
        await self.session.flush()

    async def list_ids(self, pagination: QueryPagination) -> list[str]:
        """List token addresses in registration order."""
        stmt = pagination.apply(select(TokenModel.id).order_by(TokenModel.seq.asc()))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class TransferRepository:
    """Repository for recorded transfers."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, transfers: Sequence[DecodedTransfer]) -> int:
        """Insert decoded transfers (idempotent on block hash, txn hash and log index).

        Returns the number of rows created; log keys that are already recorded
        are skipped and not counted.
        """
        if not transfers:
            return 0

        rows = [
            {
                "token_id": t.token.lower(),
                "block_hash": t.block_hash.lower(),
                "txn_hash": t.transaction_hash.lower(),
                "log_index": t.log_index,
                "from_addr": t.from_address.lower(),
                "to_addr": t.to_address.lower(),
                "value": t.value,
            }
            for t in transfers
        ]
        insert = _insert_for(self.session)
        created = 0
        for chunk in _chunks(rows, INSERT_CHUNK_SIZE):
            stmt = insert(TransferModel).values(list(chunk))
            stmt = stmt.on_conflict_do_nothing(index_elements=["block_hash", "txn_hash", "log_index"])
            result = await self.session.execute(stmt)
            created += int(result.rowcount or 0)

        await self.session.flush()
        return created

    async def delete_by_block(self, block_hash: str) -> int:
        """Delete every transfer recorded under a block hash.

        Returns:
            Number of rows deleted.
        """
        result = await self.session.execute(
            delete(TransferModel).where(TransferModel.block_hash == block_hash.lower())
        )
        return int(result.rowcount or 0)

    async def find(self, transfers_filter: TransfersFilter) -> list[TransferDTO]:
        """Get transfers matching a filter, in recording order."""
        stmt = select(TransferModel)
        if transfers_filter.from_addresses:
            stmt = stmt.where(
                TransferModel.from_addr.in_([a.lower() for a in transfers_filter.from_addresses])
            )
        if transfers_filter.to_addresses:
            stmt = stmt.where(
                TransferModel.to_addr.in_([a.lower() for a in transfers_filter.to_addresses])
            )
        if transfers_filter.tokens:
            stmt = stmt.where(TransferModel.token_id.in_([t.lower() for t in transfers_filter.tokens]))
        stmt = transfers_filter.pagination.apply(stmt.order_by(TransferModel.seq.asc()))

        result = await self.session.execute(stmt)
        return [TransferDTO.from_model(m) for m in result.scalars().all()]
