"""FastAPI query surface.

Every response uses the same envelope::

    {"status": "SUCCESS" | "ERROR", "result": <payload or error message>}

Malformed input is answered with 400 and store failures with 500.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from eth_token_tracker import __version__
from eth_token_tracker.query import DEFAULT_PAGE_SIZE, QueryError, QueryService
from eth_token_tracker.storage.repos import TransferDTO
from eth_token_tracker.storage.store import StoreError

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "SUCCESS"
STATUS_ERROR = "ERROR"

StatusProvider = Callable[[], dict[str, Any]]


def envelope(result: Any, *, status: str = STATUS_SUCCESS) -> dict[str, Any]:
    return {"status": status, "result": result}


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(message, status=STATUS_ERROR))


def _transfers(rows: list[TransferDTO]) -> dict[str, Any]:
    return envelope([row.to_dict() for row in rows])


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events"""
    logger.info("Query API starting")
    yield
    logger.info("Query API shutting down")


def create_app(query_service: QueryService, *, status_provider: StatusProvider | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        query_service: Service answering all read routes.
        status_provider: Optional callable whose result is served on ``/health``.
    """
    app = FastAPI(
        title="ETH Token Tracker API",
        description="Paginated, filterable reads of recorded ERC20 transfers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.query_service = query_service

    @app.exception_handler(QueryError)
    async def query_error_handler(_request: Request, exc: QueryError) -> JSONResponse:
        return _error_response(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = [f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()]
        return _error_response(400, "; ".join(messages) or "invalid request")

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store error while serving %s: %s", request.url.path, exc)
        return _error_response(500, str(exc))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return envelope(status_provider() if status_provider else {"state": "unknown"})

    @app.get("/tokens")
    async def list_tokens(
        limit: int = Query(DEFAULT_PAGE_SIZE, ge=0),
        offset: int = Query(0, ge=0),
    ) -> dict[str, Any]:
        return envelope(await query_service.list_tokens(limit=limit, offset=offset))

    @app.get("/tokens/{token}")
    async def list_token_transfers(
        token: str,
        from_addresses: list[str] = Query(default=[], alias="from"),
        to_addresses: list[str] = Query(default=[], alias="to"),
        limit: int = Query(DEFAULT_PAGE_SIZE, ge=0),
        offset: int = Query(0, ge=0),
    ) -> dict[str, Any]:
        rows = await query_service.list_token_transfers(
            token,
            from_addresses=from_addresses,
            to_addresses=to_addresses,
            limit=limit,
            offset=offset,
        )
        return _transfers(rows)

    @app.get("/from/{address}")
    async def list_from_transfers(
        address: str,
        to_addresses: list[str] = Query(default=[], alias="to"),
        tokens: list[str] = Query(default=[]),
        limit: int = Query(DEFAULT_PAGE_SIZE, ge=0),
        offset: int = Query(0, ge=0),
    ) -> dict[str, Any]:
        rows = await query_service.list_from_transfers(
            address,
            to_addresses=to_addresses,
            tokens=tokens,
            limit=limit,
            offset=offset,
        )
        return _transfers(rows)

    @app.get("/to/{address}")
    async def list_to_transfers(
        address: str,
        from_addresses: list[str] = Query(default=[], alias="from"),
        tokens: list[str] = Query(default=[]),
        limit: int = Query(DEFAULT_PAGE_SIZE, ge=0),
        offset: int = Query(0, ge=0),
    ) -> dict[str, Any]:
        rows = await query_service.list_to_transfers(
            address,
            from_addresses=from_addresses,
            tokens=tokens,
            limit=limit,
            offset=offset,
        )
        return _transfers(rows)

    return app
