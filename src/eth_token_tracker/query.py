"""Read-only query service over the transfer store.

Validates caller input (addresses, pagination) and translates it into store
reads. Holds no state of its own, so any number of callers may use one
instance concurrently.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Protocol

from eth_token_tracker.storage.repos import QueryPagination, TransferDTO, TransfersFilter

DEFAULT_PAGE_SIZE = 100

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class QueryError(ValueError):
    """Raised for malformed caller input (bad address, negative limit/offset)."""


class TransferReader(Protocol):
    """Read side of the store."""

    async def list_tokens(self, pagination: QueryPagination | None = None) -> list[str]: ...

    async def get_transfers(self, transfers_filter: TransfersFilter | None = None) -> list[TransferDTO]: ...


def normalize_address(value: str, *, field: str = "address") -> str:
    """Validate a 20-byte hex address and return it lower-cased.

    Raises:
        QueryError: If ``value`` is not a ``0x``-prefixed 40-digit hex string.
    """
    candidate = value.strip()
    if not _ADDRESS_RE.match(candidate):
        raise QueryError(f"invalid {field}: {value!r}")
    return candidate.lower()


def _addresses(values: Iterable[str] | None, field: str) -> tuple[str, ...]:
    if not values:
        return ()
    return tuple(dict.fromkeys(normalize_address(v, field=field) for v in values))


def _pagination(limit: int, offset: int) -> QueryPagination:
    try:
        return QueryPagination(limit=limit, offset=offset)
    except ValueError as e:
        raise QueryError(str(e)) from e


class QueryService:
    """Filtered, paginated reads of tokens and transfers.

    Example:
        ```python
        service = QueryService(store)
        tokens = await service.list_tokens(limit=10)
        transfers = await service.list_to_transfers("0x...", tokens=[tokens[0]])
        ```
    """

    def __init__(self, store: TransferReader) -> None:
        self._store = store

    async def list_tokens(self, *, limit: int = 0, offset: int = 0) -> list[str]:
        """List registered tokens in registration order. ``limit=0`` returns all."""
        return await self._store.list_tokens(_pagination(limit, offset))

    async def get_transfers(
        self,
        *,
        from_addresses: Iterable[str] | None = None,
        to_addresses: Iterable[str] | None = None,
        tokens: Iterable[str] | None = None,
        limit: int = 0,
        offset: int = 0,
    ) -> list[TransferDTO]:
        """Get transfers matching every non-empty address set.

        Raises:
            QueryError: If an address or the pagination is invalid.
        """
        transfers_filter = TransfersFilter(
            from_addresses=_addresses(from_addresses, "from address"),
            to_addresses=_addresses(to_addresses, "to address"),
            tokens=_addresses(tokens, "token"),
            pagination=_pagination(limit, offset),
        )
        return await self._store.get_transfers(transfers_filter)

    async def list_token_transfers(
        self,
        token: str,
        *,
        from_addresses: Iterable[str] | None = None,
        to_addresses: Iterable[str] | None = None,
        limit: int = 0,
        offset: int = 0,
    ) -> list[TransferDTO]:
        """Transfers of one token, optionally narrowed by sender and receiver."""
        return await self.get_transfers(
            from_addresses=from_addresses,
            to_addresses=to_addresses,
            tokens=[normalize_address(token, field="token")],
            limit=limit,
            offset=offset,
        )

    async def list_from_transfers(
        self,
        address: str,
        *,
        to_addresses: Iterable[str] | None = None,
        tokens: Iterable[str] | None = None,
        limit: int = 0,
        offset: int = 0,
    ) -> list[TransferDTO]:
        """Transfers sent by ``address``."""
        return await self.get_transfers(
            from_addresses=[normalize_address(address, field="from address")],
            to_addresses=to_addresses,
            tokens=tokens,
            limit=limit,
            offset=offset,
        )

    async def list_to_transfers(
        self,
        address: str,
        *,
        from_addresses: Iterable[str] | None = None,
        tokens: Iterable[str] | None = None,
        limit: int = 0,
        offset: int = 0,
    ) -> list[TransferDTO]:
        """Transfers received by ``address``."""
        return await self.get_transfers(
            from_addresses=from_addresses,
            to_addresses=[normalize_address(address, field="to address")],
            tokens=tokens,
            limit=limit,
            offset=offset,
        )
