"""ERC20 ``Transfer`` log decoding.

A log is treated as a token transfer only when it carries exactly three
topics: the event id plus the indexed ``from`` and ``to`` addresses. Anything
else is a non-standard emission and is skipped by callers, not rejected.
"""

from __future__ import annotations

from dataclasses import dataclass

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from eth_token_tracker.ingestor.models import Log

# ERC20 Transfer(address,address,uint256)
TRANSFER_EVENT_SIGNATURE = Web3.keccak(text="Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = Web3.to_hex(TRANSFER_EVENT_SIGNATURE)
TRANSFER_TOPIC_COUNT = 3

_WORD_SIZE = 32


class DecodeError(Exception):
    """Raised when a transfer-shaped log has unparsable fields."""


@dataclass(frozen=True)
class DecodedTransfer:
    """A decoded ERC20 transfer, keyed by (block_hash, transaction_hash, log_index)."""

    token: str
    from_address: str
    to_address: str
    value: int
    block_hash: str
    transaction_hash: str
    log_index: int


def is_transfer_shaped(log: Log) -> bool:
    return len(log.topics) == TRANSFER_TOPIC_COUNT


def _topic_to_address(log: Log, position: int, name: str) -> str:
    topic = log.topics[position]
    if len(topic) != _WORD_SIZE:
        raise DecodeError(
            f"topic '{name}' of log {log.transaction_hash}:{log.log_index} is "
            f"{len(topic)} bytes, expected {_WORD_SIZE}"
        )
    return "0x" + topic[-20:].hex()


def _decode_value(log: Log) -> int:
    if len(log.data) != _WORD_SIZE:
        raise DecodeError(
            f"data of log {log.transaction_hash}:{log.log_index} is "
            f"{len(log.data)} bytes, expected a single uint256 word"
        )
    try:
        (value,) = abi_decode(["uint256"], log.data)
    except DecodingError as e:
        raise DecodeError(f"cannot decode 'value' of log {log.transaction_hash}: {e}") from e
    return int(value)


def decode_transfer(log: Log) -> DecodedTransfer:
    """Decode a transfer-shaped log.

    Raises:
        DecodeError: If the log is not transfer-shaped or a field is malformed.
    """
    if not is_transfer_shaped(log):
        raise DecodeError(f"expected {TRANSFER_TOPIC_COUNT} topics, got {len(log.topics)}")
    if not log.address or not log.block_hash or not log.transaction_hash:
        raise DecodeError("log is missing its address, block hash or transaction hash")

    return DecodedTransfer(
        token=log.address.lower(),
        from_address=_topic_to_address(log, 1, "from"),
        to_address=_topic_to_address(log, 2, "to"),
        value=_decode_value(log),
        block_hash=log.block_hash.lower(),
        transaction_hash=log.transaction_hash.lower(),
        log_index=log.log_index,
    )
