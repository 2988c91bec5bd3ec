"""Data models for the ingestor module."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any


def normalize_hex(value: Any) -> str:
    """Return a lower-case ``0x``-prefixed hex string for bytes or hex input."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).strip().lower()
    if not text.startswith("0x"):
        text = "0x" + text
    return text


def _to_bytes(value: Any) -> bytes:
    # HexBytes is a bytes subclass; RPC payloads may also carry hex strings.
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    if len(text) % 2:
        text = "0" + text
    return bytes.fromhex(text)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text, 16) if text.startswith(("0x", "0X")) else int(text)


@dataclass(frozen=True)
class Log:
    """A single log entry emitted by a contract, tagged with its owning block."""

    address: str
    block_hash: str
    transaction_hash: str
    topics: tuple[bytes, ...] = ()
    data: bytes = b""
    block_number: int = 0
    log_index: int = 0

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> Log:
        """Create a Log from an ``eth_getLogs`` entry (raw JSON or web3 AttributeDict)."""
        return cls(
            address=normalize_hex(data["address"]),
            block_hash=normalize_hex(data["blockHash"]),
            transaction_hash=normalize_hex(data["transactionHash"]),
            topics=tuple(_to_bytes(t) for t in data.get("topics") or ()),
            data=_to_bytes(data.get("data") or b""),
            block_number=_to_int(data.get("blockNumber") or 0),
            log_index=_to_int(data.get("logIndex") or 0),
        )


@dataclass(frozen=True)
class BlockRef:
    """A block identified by number and hash."""

    number: int
    hash: str

    def to_dict(self) -> dict[str, Any]:
        return {"block_number": self.number, "block_hash": self.hash}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BlockRef:
        return cls(number=int(data["block_number"]), hash=normalize_hex(data["block_hash"]))


@dataclass(frozen=True)
class BlockEvent:
    """One unit of consumption from the event feed.

    ``removed_logs`` belong to blocks invalidated by a reorg; ``added_logs``
    belong to newly accepted blocks. The two sides may reference different
    block hashes. ``head`` is the newest block the event covers, if the
    source tracks one; it becomes the resume point once the event is applied.
    """

    added_logs: tuple[Log, ...] = field(default_factory=tuple)
    removed_logs: tuple[Log, ...] = field(default_factory=tuple)
    head: BlockRef | None = None

    @classmethod
    def of(
        cls,
        added: Sequence[Log] = (),
        removed: Sequence[Log] = (),
        *,
        head: BlockRef | None = None,
    ) -> BlockEvent:
        return cls(added_logs=tuple(added), removed_logs=tuple(removed), head=head)

    @property
    def is_empty(self) -> bool:
        return not self.added_logs and not self.removed_logs

    def removed_block_hashes(self) -> list[str]:
        """Distinct block hashes of the removed logs, in first-seen order."""
        seen: dict[str, None] = {}
        for log in self.removed_logs:
            seen.setdefault(log.block_hash, None)
        return list(seen)


@dataclass(frozen=True)
class SyncCompleted:
    """Queue marker: every historical batch up to ``head_block`` has been emitted."""

    head_block: int | None = None
