"""Tests for the transactional store."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from eth_token_tracker.ingestor.decoder import DecodeError
from eth_token_tracker.storage.repos import QueryPagination, TransfersFilter
from eth_token_tracker.storage.store import Store, StoreError
from factories import ALICE, BOB, CAROL, TOKEN_A, TOKEN_B, block_hash, transfer_log


def _token(n: int) -> str:
    return "0x" + f"{n:040x}"


class TestWriteAndRead:
    """Round trips through write_batch and the read operations."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store: Store) -> None:
        logs = [transfer_log(token=TOKEN_A, txn=i, value=i * 10) for i in range(1, 4)]

        written = await store.write_batch(logs)

        assert written == 3
        rows = await store.get_transfers(TransfersFilter(tokens=(TOKEN_A,)))
        assert [r.value for r in rows] == [10, 20, 30]
        assert await store.list_tokens() == [TOKEN_A]

    @pytest.mark.asyncio
    async def test_token_registered_once_across_batches(self, store: Store) -> None:
        await store.write_batch([transfer_log(txn=1), transfer_log(txn=2)])
        await store.write_batch([transfer_log(txn=3, block=2)])

        assert await store.list_tokens() == [TOKEN_A]

    @pytest.mark.asyncio
    async def test_reingest_does_not_duplicate(self, store: Store) -> None:
        batch = [transfer_log(txn=1), transfer_log(txn=1, log_index=1)]

        assert await store.write_batch(batch) == 2
        assert await store.write_batch(batch) == 0

        assert len(await store.get_transfers()) == 2

    @pytest.mark.asyncio
    async def test_partial_replay_counts_new_transfers_only(self, store: Store) -> None:
        await store.write_batch([transfer_log(txn=1)])

        assert await store.write_batch([transfer_log(txn=1), transfer_log(txn=2)]) == 1

    @pytest.mark.asyncio
    async def test_addresses_are_lowercased(self, store: Store) -> None:
        mixed = "0x" + "Ab" * 20
        await store.write_batch([transfer_log(token=mixed)])

        assert await store.list_tokens() == [mixed.lower()]
        rows = await store.get_transfers(TransfersFilter.build(tokens=[mixed]))
        assert len(rows) == 1
        assert rows[0].token == mixed.lower()

    @pytest.mark.asyncio
    async def test_value_above_int64(self, store: Store) -> None:
        value = 2**255 + 7
        await store.write_batch([transfer_log(value=value)])

        rows = await store.get_transfers()
        assert rows[0].value == value
        assert rows[0].to_dict()["value"] == str(value)

    @pytest.mark.asyncio
    async def test_empty_store_reads(self, store: Store) -> None:
        assert await store.list_tokens() == []
        assert await store.get_transfers(TransfersFilter.build(tokens=[TOKEN_A])) == []


class TestShapeFiltering:
    """Logs without exactly three topics are skipped."""

    @pytest.mark.asyncio
    async def test_non_standard_logs_are_ignored(self, store: Store) -> None:
        standard = transfer_log()
        two_topics = transfer_log(txn=2, topics=standard.topics[:2])
        four_topics = transfer_log(txn=3, topics=standard.topics + (bytes(32),))

        written = await store.write_batch([two_topics, four_topics])

        assert written == 0
        assert await store.list_tokens() == []
        assert await store.get_transfers() == []

    @pytest.mark.asyncio
    async def test_mixed_batch_keeps_standard_logs(self, store: Store) -> None:
        standard = transfer_log(txn=1)
        odd = transfer_log(txn=2, topics=standard.topics[:1])

        assert await store.write_batch([standard, odd]) == 1
        assert len(await store.get_transfers()) == 1


class TestAtomicity:
    """A batch is recorded in full or not at all."""

    @pytest.mark.asyncio
    async def test_decode_failure_leaves_store_unchanged(self, store: Store) -> None:
        good = transfer_log(txn=1)
        bad = transfer_log(token=TOKEN_B, txn=2, data=b"\x01\x02")

        with pytest.raises(DecodeError):
            await store.write_batch([good, bad])

        assert await store.list_tokens() == []
        assert await store.get_transfers() == []

    @pytest.mark.asyncio
    async def test_failed_insert_rolls_back_token_registration(self, store: Store) -> None:
        failure = OperationalError("INSERT INTO transfers", {}, Exception("disk I/O error"))
        with patch(
            "eth_token_tracker.storage.store.TransferRepository.insert_many",
            new=AsyncMock(side_effect=failure),
        ):
            with pytest.raises(StoreError):
                await store.write_batch([transfer_log()])

        assert await store.list_tokens() == []


class TestConcurrentReads:
    """Readers running alongside the writer only see committed batches."""

    @pytest.mark.asyncio
    async def test_reads_during_multi_chunk_write(self, store: Store) -> None:
        logs = [transfer_log(txn=n) for n in range(1, 2001)]
        observed: set[int] = set()

        write = asyncio.create_task(store.write_batch(logs))
        while not write.done():
            observed.add(len(await store.get_transfers()))
            await asyncio.sleep(0)

        assert await write == 2000
        assert observed <= {0, 2000}
        assert len(await store.get_transfers()) == 2000
        assert await store.list_tokens() == [TOKEN_A]

    def test_in_memory_database_rejected(self) -> None:
        with pytest.raises(ValueError, match="in-memory"):
            Store.from_url("sqlite+aiosqlite:///:memory:")


class TestRemoveByBlock:
    """Rollback of a block's transfers."""

    @pytest.mark.asyncio
    async def test_removes_only_matching_block(self, store: Store) -> None:
        await store.write_batch([transfer_log(block=1, txn=1), transfer_log(block=1, txn=2)])
        await store.write_batch([transfer_log(block=2, txn=3)])

        removed = await store.remove_by_block(block_hash(1))

        assert removed == 2
        rows = await store.get_transfers()
        assert [r.block_hash for r in rows] == [block_hash(2)]

    @pytest.mark.asyncio
    async def test_tokens_survive_removal(self, store: Store) -> None:
        await store.write_batch([transfer_log(block=1)])

        await store.remove_by_block(block_hash(1))

        assert await store.list_tokens() == [TOKEN_A]

    @pytest.mark.asyncio
    async def test_unknown_block_is_noop(self, store: Store) -> None:
        await store.write_batch([transfer_log(block=1)])

        assert await store.remove_by_block(block_hash(99)) == 0
        assert len(await store.get_transfers()) == 1

    @pytest.mark.asyncio
    async def test_removed_block_can_be_reingested(self, store: Store) -> None:
        log = transfer_log(block=1)
        await store.write_batch([log])
        await store.remove_by_block(block_hash(1))

        await store.write_batch([log])

        assert len(await store.get_transfers()) == 1


class TestPagination:
    """Limit/offset over tokens and transfers."""

    @pytest.mark.asyncio
    async def test_token_pages(self, store: Store) -> None:
        tokens = [_token(i) for i in range(1, 6)]
        for i, token in enumerate(tokens):
            await store.write_batch([transfer_log(token=token, txn=i)])

        assert await store.list_tokens(QueryPagination(limit=2, offset=3)) == tokens[3:5]
        assert await store.list_tokens(QueryPagination(limit=0)) == tokens
        assert await store.list_tokens(QueryPagination(limit=0, offset=4)) == tokens[4:]
        assert await store.list_tokens(QueryPagination(limit=2, offset=10)) == []

    @pytest.mark.asyncio
    async def test_transfer_pages(self, store: Store) -> None:
        await store.write_batch([transfer_log(txn=i, value=i) for i in range(1, 6)])

        page = await store.get_transfers(TransfersFilter.build(limit=2, offset=1))

        assert [r.value for r in page] == [2, 3]


class TestFilterComposition:
    """Address sets are ANDed together and ORed within."""

    @pytest.fixture
    async def populated(self, store: Store) -> Store:
        await store.write_batch(
            [
                transfer_log(token=TOKEN_A, from_address=ALICE, to_address=BOB, txn=1),
                transfer_log(token=TOKEN_B, from_address=CAROL, to_address=BOB, txn=2),
                transfer_log(token=TOKEN_B, from_address=BOB, to_address=ALICE, txn=3),
            ]
        )
        return store

    @pytest.mark.asyncio
    async def test_single_predicate(self, populated: Store) -> None:
        rows = await populated.get_transfers(TransfersFilter.build(to_addresses=[BOB]))
        assert [r.token for r in rows] == [TOKEN_A, TOKEN_B]

    @pytest.mark.asyncio
    async def test_predicates_intersect(self, populated: Store) -> None:
        rows = await populated.get_transfers(TransfersFilter.build(to_addresses=[BOB], tokens=[TOKEN_A]))
        assert len(rows) == 1
        assert rows[0].from_address == ALICE

    @pytest.mark.asyncio
    async def test_set_is_inclusive(self, populated: Store) -> None:
        rows = await populated.get_transfers(TransfersFilter.build(from_addresses=[ALICE, CAROL]))
        assert {r.from_address for r in rows} == {ALICE, CAROL}

    @pytest.mark.asyncio
    async def test_empty_filter_matches_all(self, populated: Store) -> None:
        assert len(await populated.get_transfers(TransfersFilter())) == 3

    @pytest.mark.asyncio
    async def test_no_match_is_empty(self, populated: Store) -> None:
        rows = await populated.get_transfers(TransfersFilter.build(from_addresses=[ALICE], to_addresses=[ALICE]))
        assert rows == []


class TestClose:
    """Store shutdown."""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, sqlite_url: str) -> None:
        store = Store.from_url(sqlite_url)
        await store.init_schema()

        await store.close()
        await store.close()

        assert store.closed

    @pytest.mark.asyncio
    async def test_operations_after_close_fail(self, sqlite_url: str) -> None:
        store = Store.from_url(sqlite_url)
        await store.init_schema()
        await store.close()

        with pytest.raises(StoreError):
            await store.write_batch([transfer_log()])
        with pytest.raises(StoreError):
            await store.list_tokens()
