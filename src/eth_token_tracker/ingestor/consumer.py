"""Sequential block-event consumer.

The consumer is the only writer of the store. It drains a bounded queue one
item at a time, so the order in which events are applied always matches the
order in which the feed produced them. Within an event, every removed block is
rolled back before any added log is written.

Each call to :meth:`IngestionConsumer.step` reports what happened to the
caller instead of cancelling shared state itself; :meth:`IngestionConsumer.run`
loops until a step is terminal and returns the error, if any, to its owner.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from eth_token_tracker.ingestor.models import BlockEvent, Log, SyncCompleted

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1024

QueueItem = BlockEvent | SyncCompleted
AppliedCallback = Callable[[BlockEvent], Awaitable[None]]


class TransferStore(Protocol):
    """Write side of the store, as used by the consumer."""

    async def write_batch(self, logs: Sequence[Log]) -> int: ...

    async def remove_by_block(self, block_hash: str) -> int: ...


class ConsumerState(str, Enum):
    """Consumer lifecycle states."""

    IDLE = "idle"
    SYNCING = "syncing"
    POLLING = "polling"
    STOPPED = "stopped"


class StepKind(str, Enum):
    CONTINUE = "continue"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class Step:
    """Outcome of consuming one queue item."""

    kind: StepKind
    error: Exception | None = None

    @classmethod
    def proceed(cls) -> Step:
        return cls(StepKind.CONTINUE)

    @classmethod
    def cancelled(cls) -> Step:
        return cls(StepKind.CANCELLED)

    @classmethod
    def failed(cls, error: Exception) -> Step:
        return cls(StepKind.FAILED, error)

    @property
    def is_terminal(self) -> bool:
        return self.kind is not StepKind.CONTINUE


@dataclass
class ConsumerStats:
    """Statistics for the consumer."""

    events_applied: int = 0
    transfers_written: int = 0
    transfers_removed: int = 0
    blocks_rolled_back: int = 0
    last_event_at: datetime | None = None
    last_error: str | None = None


class IngestionConsumer:
    """Applies block events from a bounded queue to a store, one at a time.

    Example:
        ```python
        consumer = IngestionConsumer(store)
        stop_event = asyncio.Event()
        task = asyncio.create_task(consumer.run(stop_event))

        await consumer.queue.put(BlockEvent.of(added=logs))
        await consumer.queue.put(SyncCompleted())

        stop_event.set()
        error = await task
        ```
    """

    def __init__(
        self,
        store: TransferStore,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        on_applied: AppliedCallback | None = None,
    ) -> None:
        """Initialize the consumer.

        Args:
            store: Store receiving removals and writes.
            queue_size: Capacity of the event queue. Producers block when full.
            on_applied: Awaited after each event has been applied in full.
        """
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self._store = store
        self._queue: asyncio.Queue[QueueItem] = asyncio.Queue(maxsize=queue_size)
        self._on_applied = on_applied
        self._state = ConsumerState.IDLE
        self._stats = ConsumerStats()

    @property
    def queue(self) -> asyncio.Queue[QueueItem]:
        return self._queue

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def stats(self) -> ConsumerStats:
        return self._stats

    async def apply(self, event: BlockEvent) -> None:
        """Apply one event: roll back removed blocks, then write added logs.

        Raises:
            DecodeError: If an added log cannot be decoded.
            StoreError: If a removal or the write transaction fails.
        """
        for block_hash in event.removed_block_hashes():
            removed = await self._store.remove_by_block(block_hash)
            self._stats.blocks_rolled_back += 1
            self._stats.transfers_removed += removed
            logger.info("Rolled back block %s (%d transfers)", block_hash, removed)

        if event.added_logs:
            self._stats.transfers_written += await self._store.write_batch(event.added_logs)

        self._stats.events_applied += 1
        self._stats.last_event_at = datetime.now(UTC)

        if self._on_applied is not None:
            await self._on_applied(event)

    async def _next_item(self, stop_event: asyncio.Event) -> QueueItem | None:
        """Wait for the next queue item, or return None once ``stop_event`` is set."""
        get_task: asyncio.Task[QueueItem] = asyncio.create_task(self._queue.get())
        stop_task = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait({get_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (get_task, stop_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        # An item that was already dequeued is still applied.
        if get_task.done() and not get_task.cancelled():
            return get_task.result()
        return None

    async def step(self, stop_event: asyncio.Event) -> Step:
        """Consume a single queue item.

        Cancellation is only observed between items; an item that has been
        taken off the queue is always applied (or fails) in full.
        """
        if stop_event.is_set():
            return Step.cancelled()

        item = await self._next_item(stop_event)
        if item is None:
            return Step.cancelled()

        try:
            if isinstance(item, SyncCompleted):
                self._state = ConsumerState.POLLING
                logger.info("Historical sync complete (head=%s), polling for new blocks", item.head_block)
            else:
                await self.apply(item)
        except Exception as e:
            self._stats.last_error = str(e)
            return Step.failed(e)
        finally:
            self._queue.task_done()

        return Step.proceed()

    async def run(self, stop_event: asyncio.Event) -> Exception | None:
        """Consume until ``stop_event`` is set or an event fails.

        Returns:
            The error that stopped consumption, or None after cancellation.

        Raises:
            RuntimeError: If the consumer has already run.
        """
        if self._state != ConsumerState.IDLE:
            raise RuntimeError(f"Cannot run consumer in state {self._state}")

        self._state = ConsumerState.SYNCING
        logger.info("Ingestion consumer started")
        try:
            while True:
                step = await self.step(stop_event)
                if not step.is_terminal:
                    continue
                if step.kind is StepKind.FAILED:
                    logger.error("Ingestion consumer stopped on error: %s", step.error)
                    return step.error
                logger.info("Ingestion consumer cancelled")
                return None
        finally:
            self._state = ConsumerState.STOPPED
