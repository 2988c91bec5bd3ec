"""Shared builders for logs, addresses and hashes used across the test suite."""

from __future__ import annotations

from eth_token_tracker.ingestor.decoder import TRANSFER_EVENT_SIGNATURE
from eth_token_tracker.ingestor.models import Log

TOKEN_A = "0x" + "a0" * 20
TOKEN_B = "0x" + "b0" * 20
ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20
CAROL = "0x" + "33" * 20


def block_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def txn_hash(n: int) -> str:
    return "0x" + f"{n:064x}".replace("0", "e", 1)


def address_topic(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])


def transfer_log(
    *,
    token: str = TOKEN_A,
    from_address: str = ALICE,
    to_address: str = BOB,
    value: int = 1,
    block: int = 1,
    txn: int = 1,
    log_index: int = 0,
    hash_of_block: str | None = None,
    topics: tuple[bytes, ...] | None = None,
    data: bytes | None = None,
) -> Log:
    """Build a Transfer log; ``topics``/``data`` overrides produce malformed logs."""
    if topics is None:
        topics = (
            bytes(TRANSFER_EVENT_SIGNATURE),
            address_topic(from_address),
            address_topic(to_address),
        )
    return Log(
        address=token,
        block_hash=hash_of_block or block_hash(block),
        transaction_hash=txn_hash(txn),
        topics=topics,
        data=data if data is not None else value.to_bytes(32, "big"),
        block_number=block,
        log_index=log_index,
    )
