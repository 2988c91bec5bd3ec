"""Lifecycle controller for ingestion.

This module provides the TokenTracker class that wires an event source to the
ingestion consumer and a store, and coordinates their shutdown.

Tracker flow:
    EventSource (sync, then poll) → bounded queue → IngestionConsumer → Store
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from eth_token_tracker.ingestor.consumer import DEFAULT_QUEUE_SIZE, IngestionConsumer
from eth_token_tracker.ingestor.models import SyncCompleted

if TYPE_CHECKING:
    from eth_token_tracker.ingestor.consumer import ConsumerStats
    from eth_token_tracker.ingestor.feed import EventSource
    from eth_token_tracker.ingestor.models import BlockEvent
    from eth_token_tracker.storage.store import Store

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 10.0


class IngestionError(Exception):
    """Raised when ingestion stops because the feed or the consumer failed."""


class TrackerState(str, Enum):
    """Tracker lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class TrackerStats:
    """Statistics for the tracker."""

    started_at: datetime | None = None
    stopped_at: datetime | None = None
    events_emitted: int = 0
    synced_head: int | None = None
    graceful_shutdown: bool | None = None
    last_error: str | None = None


class TokenTracker:
    """Runs ingestion from an event source into a store.

    The tracker owns both collaborators: stopping it closes the store and
    releases the source.

    Example:
        ```python
        tracker = TokenTracker(store, ChainLogFeed.from_settings(settings.tracker))

        await tracker.start()
        # ... until a shutdown signal arrives
        graceful = await tracker.stop()
        ```
    """

    def __init__(
        self,
        store: Store,
        source: EventSource,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the tracker.

        Args:
            store: Store the consumer writes to. Closed on stop.
            source: Event source feeding the queue. Released on stop.
            queue_size: Capacity of the event queue.
            shutdown_timeout: Seconds to wait for the in-flight event on stop.
        """
        self._store = store
        self._source = source
        self._queue_size = queue_size
        self._shutdown_timeout = shutdown_timeout

        self._state = TrackerState.STOPPED
        self._stats = TrackerStats()

        self._consumer: IngestionConsumer | None = None
        self._stop_event: asyncio.Event | None = None
        self._feed_task: asyncio.Task[None] | None = None
        self._consumer_task: asyncio.Task[Exception | None] | None = None
        self._stop_lock = asyncio.Lock()

    @property
    def state(self) -> TrackerState:
        """Current tracker state."""
        return self._state

    @property
    def stats(self) -> TrackerStats:
        """Current tracker statistics."""
        return self._stats

    @property
    def consumer_stats(self) -> ConsumerStats | None:
        return self._consumer.stats if self._consumer else None

    @property
    def is_running(self) -> bool:
        """Check if the tracker is running."""
        return self._state == TrackerState.RUNNING

    def status(self) -> dict[str, Any]:
        """Snapshot of state and counters, as served by the health endpoint."""
        consumer = self._consumer
        return {
            "state": self._state.value,
            "consumer_state": consumer.state.value if consumer else None,
            "synced_head": self._stats.synced_head,
            "events_emitted": self._stats.events_emitted,
            "events_applied": consumer.stats.events_applied if consumer else 0,
            "transfers_written": consumer.stats.transfers_written if consumer else 0,
            "transfers_removed": consumer.stats.transfers_removed if consumer else 0,
            "last_error": self._stats.last_error,
        }

    async def start(self) -> None:
        """Start the consumer and the feed.

        Raises:
            RuntimeError: If the tracker has already been started.
        """
        if self._state != TrackerState.STOPPED or self._consumer is not None:
            raise RuntimeError(f"Cannot start tracker in state {self._state}")

        self._state = TrackerState.STARTING
        logger.info("Starting tracker...")

        self._stop_event = asyncio.Event()
        self._consumer = IngestionConsumer(
            self._store,
            queue_size=self._queue_size,
            on_applied=self._source.commit,
        )
        self._consumer_task = asyncio.create_task(self._consumer.run(self._stop_event))
        self._feed_task = asyncio.create_task(self._run_feed())

        self._stats.started_at = datetime.now(UTC)
        self._state = TrackerState.RUNNING
        logger.info("Tracker started")

    async def _emit(self, event: BlockEvent) -> None:
        assert self._consumer is not None
        await self._consumer.queue.put(event)
        self._stats.events_emitted += 1

    async def _run_feed(self) -> None:
        assert self._consumer is not None
        head = await self._source.sync(self._emit)
        self._stats.synced_head = head
        await self._consumer.queue.put(SyncCompleted(head_block=head))
        await self._source.poll(self._emit)

    def _fail(self, error: BaseException, where: str) -> IngestionError:
        self._state = TrackerState.ERROR
        self._stats.last_error = f"{where}: {error}"
        logger.error("Ingestion failed in %s: %s", where, error)
        return IngestionError(f"{where} failed: {error}")

    def _check_consumer(self) -> None:
        assert self._consumer_task is not None
        if self._consumer_task.cancelled():
            return
        error = self._consumer_task.result()
        if error is not None:
            raise self._fail(error, "consumer") from error

    async def wait(self) -> None:
        """Block until ingestion ends.

        Returns normally after a stop request or once a finite source has been
        fully consumed.

        Raises:
            IngestionError: If the source or the consumer failed.
            RuntimeError: If the tracker was never started.
        """
        if self._feed_task is None or self._consumer_task is None:
            raise RuntimeError("Tracker has not been started")
        feed, consumer = self._feed_task, self._consumer_task

        done, _ = await asyncio.wait({feed, consumer}, return_when=asyncio.FIRST_COMPLETED)
        if consumer in done:
            self._check_consumer()
            return
        if feed.cancelled():
            return
        feed_error = feed.exception()
        if feed_error is not None:
            raise self._fail(feed_error, "event source") from feed_error

        # Source exhausted: let the consumer drain what is queued, then stop it.
        assert self._consumer is not None
        drained = asyncio.create_task(self._consumer.queue.join())
        try:
            await asyncio.wait({drained, consumer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not drained.done():
                drained.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await drained
        if not consumer.done():
            assert self._stop_event is not None
            self._stop_event.set()
            await asyncio.wait({consumer})
        self._check_consumer()
        logger.info("Event source exhausted, ingestion complete")

    async def stop(self) -> bool:
        """Stop ingestion, close the store and release the source.

        Cancellation is cooperative: the event being applied when this is
        called is allowed to finish for up to ``shutdown_timeout`` seconds,
        after which the consumer is cancelled.

        Returns:
            True if the consumer stopped within the timeout.
        """
        async with self._stop_lock:
            if self._consumer is None or self._stats.stopped_at is not None:
                return self._stats.graceful_shutdown is not False

            if self._state != TrackerState.ERROR:
                self._state = TrackerState.STOPPING
            logger.info("Stopping tracker...")

            assert self._stop_event is not None
            self._stop_event.set()
            graceful = True

            # No new events once the source is gone.
            if self._feed_task is not None:
                if not self._feed_task.done():
                    self._feed_task.cancel()
                await asyncio.gather(self._feed_task, return_exceptions=True)

            if self._consumer_task is not None:
                _, pending = await asyncio.wait({self._consumer_task}, timeout=self._shutdown_timeout)
                if pending:
                    graceful = False
                    logger.warning(
                        "Consumer did not stop within %.1fs, cancelling in-flight event",
                        self._shutdown_timeout,
                    )
                    self._consumer_task.cancel()
                    await asyncio.gather(self._consumer_task, return_exceptions=True)

            await self._cleanup()

            self._stats.stopped_at = datetime.now(UTC)
            self._stats.graceful_shutdown = graceful
            if self._state != TrackerState.ERROR:
                self._state = TrackerState.STOPPED
            logger.info("Tracker stopped (%s)", "graceful" if graceful else "forced")
            return graceful

    async def _cleanup(self) -> None:
        """Clean up resources."""
        try:
            await self._store.close()
        except Exception as e:
            logger.error("Failed to close store: %s", e)
        try:
            await self._source.aclose()
        except Exception as e:
            logger.error("Failed to release event source: %s", e)
        logger.debug("Resources cleaned up")

    async def run(self) -> bool:
        """Start the tracker and run until ingestion ends, then stop it.

        Returns:
            Whether the shutdown was graceful.

        Raises:
            IngestionError: If the source or the consumer failed.
        """
        await self.start()
        try:
            await self.wait()
        finally:
            graceful = await self.stop()
        return graceful

    async def __aenter__(self) -> TokenTracker:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
