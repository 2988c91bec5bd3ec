"""SQLAlchemy models for persistent storage.

This module defines the database schema for tokens and the transfers
recorded against them.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from eth_token_tracker.storage.types import Uint256


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TokenModel(Base):
    """A token contract, registered on the first transfer that references it."""

    __tablename__ = "tokens"

    # Insertion sequence; gives token listings a stable order.
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class TransferModel(Base):
    """A decoded ERC20 Transfer log."""

    __tablename__ = "transfers"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    token_id: Mapped[str] = mapped_column(String(42), ForeignKey("tokens.id"), nullable=False)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    txn_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    from_addr: Mapped[str] = mapped_column(String(42), nullable=False)
    to_addr: Mapped[str] = mapped_column(String(42), nullable=False)

    # Raw token units as emitted by the Transfer event (uint256).
    value: Mapped[int] = mapped_column(Uint256(), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("block_hash", "txn_hash", "log_index", name="uq_transfers_log"),
        Index("idx_transfers_block_hash", "block_hash"),
        Index("idx_transfers_token", "token_id"),
        Index("idx_transfers_from", "from_addr"),
        Index("idx_transfers_to", "to_addr"),
    )
