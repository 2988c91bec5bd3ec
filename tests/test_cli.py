"""Tests for the command line entry point."""

from __future__ import annotations

import socket
from pathlib import Path
from unittest.mock import patch

import pytest

from eth_token_tracker.cli import build_parser, build_settings, init_db, main, run_tracker
from eth_token_tracker.config import Settings, merge_layers
from eth_token_tracker.ingestor.feed import Emit
from eth_token_tracker.ingestor.models import BlockEvent, BlockRef
from eth_token_tracker.storage.registry import StoreRegistry
from eth_token_tracker.storage.store import StoreError
from factories import block_hash, transfer_log


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


@pytest.fixture
def base() -> Settings:
    return merge_layers(
        Settings(),
        {
            "log_level": "INFO",
            "http": {"addr": "127.0.0.1:5000"},
            "tracker": {"batch_size": 1000, "progress_bar": True},
        },
    )


class TestParser:
    def test_defaults_are_unset(self) -> None:
        args = build_parser().parse_args([])

        assert args.command is None
        assert args.batch_size is None
        assert args.progress_bar is None
        assert args.config is None

    def test_flags(self) -> None:
        args = build_parser().parse_args(
            [
                "--no-progress-bar",
                "--log-level",
                "debug",
                "--batch-size",
                "50",
                "--checkpoint-path",
                "/tmp/cp.json",
                "init-db",
            ]
        )

        assert args.progress_bar is False
        assert args.log_level == "DEBUG"
        assert args.batch_size == 50
        assert args.checkpoint_path == Path("/tmp/cp.json")
        assert args.command == "init-db"

    def test_version(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc:
            build_parser().parse_args(["--version"])

        assert exc.value.code == 0
        assert "0.1.0" in capsys.readouterr().out


class TestBuildSettings:
    def test_flags_override_config_file(self, tmp_path: Path, base: Settings) -> None:
        config = tmp_path / "tracker.toml"
        config.write_text('[tracker]\nbatch_size = 250\n\n[http]\naddr = "0.0.0.0:8080"\n', encoding="utf-8")
        args = build_parser().parse_args(["--config", str(config), "--batch-size", "10"])

        settings = build_settings(args, base=base)

        assert settings.tracker.batch_size == 10
        assert settings.http.addr == "0.0.0.0:8080"

    def test_unset_flags_keep_base(self, base: Settings) -> None:
        settings = build_settings(build_parser().parse_args([]), base=base)

        assert settings.tracker.batch_size == 1000
        assert settings.tracker.progress_bar is True
        assert settings.http.addr == "127.0.0.1:5000"

    def test_no_progress_bar(self, base: Settings) -> None:
        settings = build_settings(build_parser().parse_args(["--no-progress-bar"]), base=base)

        assert settings.tracker.progress_bar is False


class TestMain:
    def test_init_db(self, tmp_path: Path, sqlite_url: str) -> None:
        code = main(["--db-backend", "sqlite", "--db-endpoint", sqlite_url, "init-db"])

        assert code == 0
        assert (tmp_path / "tracker.db").exists()

    def test_init_db_backend_url_mismatch(self) -> None:
        code = main(["--db-backend", "sqlite", "--db-endpoint", "postgresql+asyncpg://tracker@db/tokens", "init-db"])

        assert code == 1

    def test_invalid_flag_value(self) -> None:
        assert main(["--batch-size", "0", "init-db"]) == 2

    def test_missing_config_file(self, tmp_path: Path) -> None:
        assert main(["--config", str(tmp_path / "missing.toml"), "init-db"]) == 2

    def test_invalid_config_file(self, tmp_path: Path) -> None:
        config = tmp_path / "broken.toml"
        config.write_text("[tracker\n", encoding="utf-8")

        assert main(["--config", str(config), "init-db"]) == 2


class _FiniteSource:
    def __init__(self) -> None:
        self.event = BlockEvent.of(added=[transfer_log(block=1)], head=BlockRef(1, block_hash(1)))
        self.committed: list[BlockEvent] = []

    async def sync(self, emit: Emit) -> int:
        await emit(self.event)
        return 1

    async def poll(self, emit: Emit) -> None:
        return None

    async def commit(self, event: BlockEvent) -> None:
        self.committed.append(event)

    async def aclose(self) -> None:
        return None


class TestCommands:
    @pytest.mark.asyncio
    async def test_init_db_unknown_backend(self, base: Settings) -> None:
        assert await init_db(base, registry=StoreRegistry()) == 1

    @pytest.mark.asyncio
    async def test_run_store_unavailable(self, base: Settings) -> None:
        async def broken(_settings: object) -> None:
            raise StoreError("connection refused")

        registry = StoreRegistry()
        registry.register("postgresql", broken)  # type: ignore[arg-type]
        settings = merge_layers(base, {"storage": {"backend": "postgresql"}})

        assert await run_tracker(settings, registry=registry) == 1

    @pytest.mark.asyncio
    async def test_run_until_source_exhausted(self, base: Settings, sqlite_url: str) -> None:
        settings = merge_layers(
            base,
            {
                "http": {"addr": f"127.0.0.1:{_free_port()}"},
                "storage": {"backend": "sqlite", "url": sqlite_url},
            },
        )
        source = _FiniteSource()

        with patch("eth_token_tracker.cli.ChainLogFeed.from_settings", return_value=source):
            code = await run_tracker(settings)

        assert code == 0
        assert source.committed == [source.event]
