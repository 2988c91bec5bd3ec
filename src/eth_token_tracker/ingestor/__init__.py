"""Data ingestion layer - Chain log feed, Transfer decoding and the sequential consumer."""

from eth_token_tracker.ingestor.consumer import (
    ConsumerState,
    ConsumerStats,
    IngestionConsumer,
    Step,
    StepKind,
)
from eth_token_tracker.ingestor.decoder import (
    TRANSFER_EVENT_SIGNATURE,
    TRANSFER_EVENT_TOPIC,
    DecodedTransfer,
    DecodeError,
    decode_transfer,
    is_transfer_shaped,
)
from eth_token_tracker.ingestor.feed import (
    ChainLogFeed,
    EventSource,
    FeedError,
    FileCheckpointStore,
)
from eth_token_tracker.ingestor.models import BlockEvent, BlockRef, Log, SyncCompleted

__all__ = [
    "BlockEvent",
    "BlockRef",
    "ChainLogFeed",
    "ConsumerState",
    "ConsumerStats",
    "DecodeError",
    "DecodedTransfer",
    "EventSource",
    "FeedError",
    "FileCheckpointStore",
    "IngestionConsumer",
    "Log",
    "Step",
    "StepKind",
    "SyncCompleted",
    "TRANSFER_EVENT_SIGNATURE",
    "TRANSFER_EVENT_TOPIC",
    "decode_transfer",
    "is_transfer_shaped",
]
