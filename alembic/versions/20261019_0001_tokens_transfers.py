"""Create tokens and transfers tables.

Revision ID: 001_tokens_transfers
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

from eth_token_tracker.storage.types import Uint256

revision: str = "001_tokens_transfers"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "tokens",
        sa.Column("seq", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("id", sa.String(42), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("seq"),
        sa.UniqueConstraint("id"),
    )

    op.create_table(
        "transfers",
        sa.Column("seq", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("token_id", sa.String(42), nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        sa.Column("txn_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("from_addr", sa.String(42), nullable=False),
        sa.Column("to_addr", sa.String(42), nullable=False),
        sa.Column("value", Uint256(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("seq"),
        sa.ForeignKeyConstraint(["token_id"], ["tokens.id"]),
        sa.UniqueConstraint("block_hash", "txn_hash", "log_index", name="uq_transfers_log"),
    )
    op.create_index("idx_transfers_block_hash", "transfers", ["block_hash"])
    op.create_index("idx_transfers_token", "transfers", ["token_id"])
    op.create_index("idx_transfers_from", "transfers", ["from_addr"])
    op.create_index("idx_transfers_to", "transfers", ["to_addr"])


def downgrade() -> None:
    op.drop_index("idx_transfers_to", table_name="transfers")
    op.drop_index("idx_transfers_from", table_name="transfers")
    op.drop_index("idx_transfers_token", table_name="transfers")
    op.drop_index("idx_transfers_block_hash", table_name="transfers")
    op.drop_table("transfers")
    op.drop_table("tokens")
