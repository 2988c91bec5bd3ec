"""Storage layer - Database schema, repositories and the transactional store."""

from eth_token_tracker.storage.database import (
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from eth_token_tracker.storage.models import Base, TokenModel, TransferModel
from eth_token_tracker.storage.registry import (
    StoreFactory,
    StoreRegistry,
    UnknownBackendError,
    default_registry,
)
from eth_token_tracker.storage.repos import (
    QueryPagination,
    TokenRepository,
    TransferDTO,
    TransferRepository,
    TransfersFilter,
)
from eth_token_tracker.storage.store import Store, StoreError

__all__ = [
    "Base",
    "QueryPagination",
    "Store",
    "StoreError",
    "StoreFactory",
    "StoreRegistry",
    "TokenModel",
    "TokenRepository",
    "TransferDTO",
    "TransferModel",
    "TransferRepository",
    "TransfersFilter",
    "UnknownBackendError",
    "create_async_db_engine",
    "create_async_session_factory",
    "default_registry",
    "init_async_db",
]
