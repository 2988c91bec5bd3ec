"""Command line entry point.

Settings are layered in a fixed order: environment (and ``.env``) over
built-in defaults, then the optional TOML file given with ``--config``, then
explicit command line flags.

The TOML file uses the same keys as the settings model::

    log_level = "DEBUG"

    [tracker]
    endpoint = "https://mainnet.infura.io/v3/<key>"
    batch_size = 500

    [storage]
    backend = "sqlite"
    url = "sqlite+aiosqlite:///tracker.db"

    [http]
    addr = "0.0.0.0:5000"
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
import tomllib
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import uvicorn
from pydantic import ValidationError

from eth_token_tracker import __version__
from eth_token_tracker.api import create_app
from eth_token_tracker.config import Settings, get_settings, load_config_file, merge_layers
from eth_token_tracker.ingestor.feed import ChainLogFeed
from eth_token_tracker.query import QueryService
from eth_token_tracker.storage.registry import StoreRegistry, UnknownBackendError, default_registry
from eth_token_tracker.storage.store import StoreError
from eth_token_tracker.tracker import TokenTracker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Extra time granted on top of the tracker's own shutdown timeout for
# closing the store and the RPC session.
SHUTDOWN_MARGIN_SECONDS = 5.0
FORCED_EXIT_CODE = 130
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="eth-token-tracker",
        description="Track ERC20 transfers from a JSON-RPC node and serve them over HTTP.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--config", type=Path, default=None, help="Path to a TOML config file.")
    p.add_argument("--http-addr", default=None, help="host:port for the query API.")
    p.add_argument("--jsonrpc-endpoint", default=None, help="JSON-RPC endpoint of the chain node.")
    p.add_argument("--checkpoint-path", type=Path, default=None, help="Feed checkpoint file.")
    p.add_argument("--db-endpoint", default=None, help="Database connection string.")
    p.add_argument("--db-backend", default=None, help="Storage backend name (postgresql, sqlite).")
    p.add_argument("--batch-size", type=int, default=None, help="Blocks per eth_getLogs range.")
    p.add_argument("--start-block", type=int, default=None, help="First block when no checkpoint exists.")
    p.add_argument(
        "--progress-bar",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Render sync progress on stderr.",
    )
    p.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level.",
    )

    sub = p.add_subparsers(dest="command")
    sub.add_parser("run", help="Ingest transfers and serve the query API (default).")
    sub.add_parser("init-db", help="Create the database schema and exit.")
    return p


def cli_layer(args: argparse.Namespace) -> dict[str, Any]:
    """Settings overrides from parsed flags; unset flags are None and fall through."""
    return {
        "log_level": args.log_level,
        "http": {"addr": args.http_addr},
        "tracker": {
            "endpoint": args.jsonrpc_endpoint,
            "checkpoint_path": args.checkpoint_path,
            "batch_size": args.batch_size,
            "start_block": args.start_block,
            "progress_bar": args.progress_bar,
        },
        "storage": {"backend": args.db_backend, "url": args.db_endpoint},
    }


def build_settings(args: argparse.Namespace, *, base: Settings | None = None) -> Settings:
    """Merge environment, config file and flags, in that order.

    Raises:
        ValidationError: If the merged settings are invalid.
        OSError: If ``--config`` cannot be read.
        tomllib.TOMLDecodeError: If ``--config`` is not valid TOML.
    """
    layers: list[dict[str, Any]] = []
    if args.config is not None:
        layers.append(load_config_file(args.config))
    layers.append(cli_layer(args))
    return merge_layers(base or get_settings(), *layers)


class _ApiServer(uvicorn.Server):
    """Uvicorn server that leaves signal handling to the CLI."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, shutdown: asyncio.Event) -> None:
    def on_signal(signum: int) -> None:
        name = signal.Signals(signum).name
        if shutdown.is_set():
            logger.warning("Received %s during shutdown, exiting immediately", name)
            os._exit(FORCED_EXIT_CODE)
        logger.info("Received %s, shutting down", name)
        shutdown.set()

    for sig in SHUTDOWN_SIGNALS:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, on_signal, sig)


def _remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in SHUTDOWN_SIGNALS:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(sig)


async def run_tracker(settings: Settings, *, registry: StoreRegistry | None = None) -> int:
    """Run ingestion and the query API until a signal arrives or ingestion fails.

    Returns:
        Process exit code: 0 after a graceful stop, 1 otherwise.
    """
    registry = registry or default_registry()
    try:
        store = await registry.create(settings.storage.backend, settings.storage)
    except (StoreError, UnknownBackendError) as e:
        logger.error("Cannot open store: %s", e)
        return 1
    feed = ChainLogFeed.from_settings(settings.tracker)
    tracker = TokenTracker(
        store,
        feed,
        queue_size=settings.queue_size,
        shutdown_timeout=settings.shutdown_timeout_seconds,
    )
    app = create_app(QueryService(store), status_provider=tracker.status)
    server = _ApiServer(
        uvicorn.Config(
            app,
            host=settings.http.host,
            port=settings.http.port,
            log_level=settings.log_level.lower(),
            log_config=None,
        )
    )

    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    _install_signal_handlers(loop, shutdown)

    exit_code = 0
    await tracker.start()
    server_task = asyncio.create_task(server.serve())
    ingest_task = asyncio.create_task(tracker.wait())
    shutdown_task = asyncio.create_task(shutdown.wait())
    try:
        await asyncio.wait({server_task, ingest_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        if ingest_task.done() and ingest_task.exception() is not None:
            logger.error("Ingestion stopped: %s", ingest_task.exception())
            exit_code = 1
        if server_task.done() and not shutdown.is_set():
            logger.error("Query API exited unexpectedly")
            exit_code = 1
    finally:
        shutdown.set()
        server.should_exit = True
        await asyncio.gather(server_task, return_exceptions=True)

        try:
            graceful = await asyncio.wait_for(
                tracker.stop(), timeout=settings.shutdown_timeout_seconds + SHUTDOWN_MARGIN_SECONDS
            )
        except TimeoutError:
            logger.error("Shutdown did not complete in time")
            graceful = False

        for task in (ingest_task, shutdown_task):
            task.cancel()
        await asyncio.gather(ingest_task, shutdown_task, return_exceptions=True)
        _remove_signal_handlers(loop)

    if not graceful:
        logger.warning("Non-graceful shutdown")
        exit_code = 1
    return exit_code


async def init_db(settings: Settings, *, registry: StoreRegistry | None = None) -> int:
    registry = registry or default_registry()
    try:
        store = await registry.create(settings.storage.backend, settings.storage)
    except (StoreError, UnknownBackendError) as e:
        logger.error("Cannot initialize schema: %s", e)
        return 1
    await store.close()
    logger.info("Schema ready (%s)", settings.storage.backend)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = build_settings(args)
    except (ValidationError, OSError, tomllib.TOMLDecodeError) as e:
        print(f"[ERROR] Invalid configuration: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)
    logger.info("Settings: %s", settings.redacted_summary())

    command = args.command or "run"
    if command == "init-db":
        return asyncio.run(init_db(settings))
    return asyncio.run(run_tracker(settings))


if __name__ == "__main__":
    raise SystemExit(main())
