"""Block event feed backed by a JSON-RPC node.

The feed walks the chain in ``eth_getLogs`` ranges, first up to the head
observed at startup (sync) and then as new blocks arrive (poll). It keeps the
hashes and Transfer logs of the most recent blocks in memory; before every
range it re-checks the newest tracked block against the canonical chain and,
on a mismatch, walks back to the fork point. The logs of every orphaned block
are emitted as ``removed_logs`` in the same event that carries the replacement
range, so consumers roll back before they replay.

Progress is persisted through a checkpoint (last applied block), which is
only advanced once the consumer reports an event as applied.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, Web3Exception
from web3.providers import AsyncHTTPProvider

from eth_token_tracker.ingestor.decoder import TRANSFER_EVENT_TOPIC
from eth_token_tracker.ingestor.models import BlockEvent, BlockRef, Log, normalize_hex
from eth_token_tracker.ingestor.progress import ProgressLine, default_progress_enabled

if TYPE_CHECKING:
    from eth_token_tracker.config import TrackerSettings

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_REORG_WINDOW = 64

Emit = Callable[[BlockEvent], Awaitable[None]]


class FeedError(Exception):
    """Raised when the feed cannot make progress (RPC failure, deep reorg, bad checkpoint)."""


class EventSource(Protocol):
    """Producer side of the ingestion queue."""

    async def sync(self, emit: Emit) -> int | None:
        """Emit historical events up to the current head and return that head."""
        ...

    async def poll(self, emit: Emit) -> None:
        """Emit events for new blocks until cancelled (or exhausted)."""
        ...

    async def commit(self, event: BlockEvent) -> None:
        """Called once ``event`` has been applied to the store."""
        ...

    async def aclose(self) -> None: ...


class FileCheckpointStore:
    """Last applied block, stored as a small JSON document."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> BlockRef | None:
        """Read the checkpoint.

        Raises:
            FeedError: If the file exists but cannot be parsed.
        """
        if not self._path.exists():
            return None
        try:
            return BlockRef.from_dict(json.loads(self._path.read_text(encoding="utf-8")))
        except (ValueError, KeyError, TypeError) as e:
            raise FeedError(f"invalid checkpoint file {self._path}: {e}") from e

    def save(self, ref: BlockRef) -> None:
        # Replaced atomically; readers never see a partial file.
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(ref.to_dict()), encoding="utf-8")
        os.replace(tmp, self._path)


class ChainLogFeed:
    """Reorg-aware ERC20 Transfer log feed.

    Example:
        ```python
        feed = ChainLogFeed.from_settings(settings.tracker)
        head = await feed.sync(queue.put)
        await feed.poll(queue.put)
        await feed.aclose()
        ```
    """

    def __init__(
        self,
        w3: AsyncWeb3[Any],
        checkpoint: FileCheckpointStore,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        start_block: int = 0,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        reorg_window: int = DEFAULT_REORG_WINDOW,
        progress: ProgressLine | None = None,
    ) -> None:
        """Initialize the feed.

        Args:
            w3: Async web3 client.
            checkpoint: Resume point store.
            batch_size: Blocks per ``eth_getLogs`` range.
            start_block: First block to fetch when there is no checkpoint.
            poll_interval: Seconds between head checks once synced.
            reorg_window: Number of recent blocks tracked for reorg detection.
            progress: Optional progress renderer for the sync phase.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if reorg_window < 1:
            raise ValueError("reorg_window must be >= 1")
        self._w3 = w3
        self._checkpoint = checkpoint
        self._batch_size = batch_size
        self._start_block = start_block
        self._poll_interval = poll_interval
        self._reorg_window = reorg_window
        self._progress = progress or ProgressLine(enabled=False)

        # block number -> (block hash, transfer logs)
        self._recent: dict[int, tuple[str, tuple[Log, ...]]] = {}
        self._next_block: int | None = None
        # First block of a fresh start. Cleared once the oldest tracked block
        # is an anchor (checkpoint block or window floor) that bounds reorgs.
        self._origin: int | None = None

    @classmethod
    def from_settings(cls, settings: TrackerSettings, *, w3: AsyncWeb3[Any] | None = None) -> ChainLogFeed:
        return cls(
            w3 or AsyncWeb3(AsyncHTTPProvider(settings.endpoint)),
            FileCheckpointStore(settings.checkpoint_path),
            batch_size=settings.batch_size,
            start_block=settings.start_block,
            poll_interval=settings.poll_interval_seconds,
            reorg_window=settings.reorg_window,
            progress=ProgressLine(enabled=settings.progress_bar and default_progress_enabled()),
        )

    @property
    def next_block(self) -> int | None:
        return self._next_block

    def tracked_blocks(self) -> dict[int, str]:
        return {number: block_hash for number, (block_hash, _) in self._recent.items()}

    async def _rpc(self, name: str, coro: Awaitable[Any]) -> Any:
        try:
            return await coro
        except Web3Exception as e:
            raise FeedError(f"RPC call {name} failed: {e}") from e

    async def _head(self) -> int:
        return int(await self._rpc("block_number", self._w3.eth.block_number))

    async def _canonical_hash(self, number: int) -> str | None:
        try:
            block = await self._rpc("get_block", self._w3.eth.get_block(number))
        except FeedError as e:
            if isinstance(e.__cause__, BlockNotFound):
                return None
            raise
        if block is None:
            return None
        return normalize_hex(block["hash"])

    async def _fetch_logs(self, params: dict[str, Any]) -> list[Log]:
        params = {**params, "topics": [TRANSFER_EVENT_TOPIC]}
        raw = await self._rpc("get_logs", self._w3.eth.get_logs(params))
        # Nodes flag logs of orphaned blocks; those are handled by the walk-back.
        return [Log.from_rpc(entry) for entry in raw if not entry.get("removed", False)]

    async def _ensure_cursor(self) -> None:
        if self._next_block is not None:
            return
        ref = self._checkpoint.load()
        if ref is None:
            self._next_block = self._start_block
            self._origin = self._start_block
            logger.info("No checkpoint, starting at block %d", self._next_block)
            return

        self._next_block = ref.number + 1
        try:
            logs = await self._fetch_logs({"blockHash": ref.hash})
        except FeedError as e:
            logger.warning("Could not reload logs of checkpoint block %s: %s", ref.hash, e)
            logs = []
        self._recent[ref.number] = (ref.hash, tuple(logs))
        logger.info("Resuming after checkpoint block %d (%s)", ref.number, ref.hash)

    async def _detect_reorg(self) -> list[Log]:
        """Drop tracked blocks that are no longer canonical and return their logs.

        The cursor moves to the block after the newest tracked block that is
        still canonical. Untracked blocks in between carried no Transfer logs,
        so they only need to be fetched again.

        Raises:
            FeedError: If the anchor block is no longer canonical.
        """
        orphaned: list[int] = []
        resume: int | None = None
        for number in sorted(self._recent, reverse=True):
            tracked_hash = self._recent[number][0]
            if await self._canonical_hash(number) == tracked_hash:
                resume = number + 1
                break
            orphaned.append(number)

        if not orphaned:
            return []
        if resume is None:
            if self._origin is None:
                raise FeedError(
                    f"reorg deeper than the tracked window of {self._reorg_window} blocks "
                    f"(anchor block {orphaned[-1]} is no longer canonical)"
                )
            resume = self._origin

        removed: list[Log] = []
        for number in sorted(orphaned):
            removed.extend(self._recent.pop(number)[1])
        self._next_block = resume
        logger.warning(
            "Chain reorganization: %d block(s) orphaned from %d, %d log(s) to roll back",
            len(orphaned),
            self._next_block,
            len(removed),
        )
        return removed

    def _track(self, end: int, end_hash: str | None, logs: Sequence[Log]) -> None:
        by_block: dict[int, tuple[str, list[Log]]] = {}
        for log in logs:
            entry = by_block.setdefault(log.block_number, (log.block_hash, []))
            entry[1].append(log)
        if end_hash is not None and end not in by_block:
            by_block[end] = (end_hash, [])

        for number in sorted(by_block):
            block_hash, block_logs = by_block[number]
            self._recent[number] = (block_hash, tuple(block_logs))

        floor = end - self._reorg_window
        expired = sorted(n for n in self._recent if n <= floor)
        # The newest expired block stays as the anchor.
        for number in expired[:-1]:
            del self._recent[number]
        if expired:
            self._origin = None

    async def _advance(self, head: int, emit: Emit, *, stage: str) -> None:
        """Emit events for every range between the cursor and ``head``."""
        await self._ensure_cursor()
        assert self._next_block is not None

        removed = await self._detect_reorg()
        if removed and self._next_block > head:
            # Replacement chain is not longer than the tracked tip yet.
            tip = max(self._recent, default=None)
            tip_ref = BlockRef(number=tip, hash=self._recent[tip][0]) if tip is not None else None
            await emit(BlockEvent.of(removed=removed, head=tip_ref))
            return

        while self._next_block <= head:
            start = self._next_block
            end = min(start + self._batch_size - 1, head)
            end_hash = await self._canonical_hash(end)
            logs = await self._fetch_logs({"fromBlock": start, "toBlock": end})

            self._track(end, end_hash, logs)
            self._next_block = end + 1
            head_ref = BlockRef(number=end, hash=end_hash) if end_hash is not None else None
            await emit(BlockEvent.of(added=logs, removed=removed, head=head_ref))
            removed = []

            if stage == "sync":
                self._progress.update(stage=stage, block=end, head=head, logs=len(logs))
            logger.debug("Emitted blocks %d-%d (%d logs)", start, end, len(logs))

    async def sync(self, emit: Emit) -> int:
        """Emit every range up to the head observed now.

        Returns:
            The head block the sync caught up to.
        """
        head = await self._head()
        await self._ensure_cursor()
        logger.info("Syncing blocks %d-%d", self._next_block, head)
        try:
            await self._advance(head, emit, stage="sync")
        finally:
            self._progress.close()
        return head

    async def poll(self, emit: Emit) -> None:
        """Follow the head until cancelled."""
        while True:
            await asyncio.sleep(self._poll_interval)
            head = await self._head()
            await self._advance(head, emit, stage="poll")

    async def commit(self, event: BlockEvent) -> None:
        if event.head is not None:
            self._checkpoint.save(event.head)

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)
