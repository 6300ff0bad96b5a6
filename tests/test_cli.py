"""
Tests for the command-line interface.

Tests cover:
- Argument parsing and configuration overrides
- Progress rendering
- Exit code mapping
- install retries
- main end to end with a mocked release server
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from phoenix_updater.cli import (
    EXIT_FATAL,
    EXIT_NON_RETRYABLE,
    EXIT_RETRYABLE,
    EXIT_SUCCESS,
    _overrides,
    build_parser,
    exit_code_for,
    install,
    main,
    render_progress,
)
from phoenix_updater.config import AppConfig
from phoenix_updater.errors import FatalError, MalformedArchiveError, NetworkError
from phoenix_updater.updates.engine import MigrationEngine, MigrationResult
from phoenix_updater.updates.progress import ProgressPhase, ProgressRecord

URL = "https://releases.example.com/cdda-0.I.zip"


def _install_args(game_dir: Path, *extra: str) -> list[str]:
    return [
        "install",
        "--url",
        URL,
        "--file-name",
        "cdda-0.I.zip",
        "--version",
        "0.I",
        "--game-dir",
        str(game_dir),
        *extra,
    ]


# =============================================================================
# Parser Tests
# =============================================================================


class TestParser:
    """Tests for build_parser and _overrides."""

    def test_install_arguments(self, tmp_path: Path) -> None:
        """Test parsing the install command."""
        parsed = build_parser().parse_args(_install_args(tmp_path, "--size", "42"))

        assert parsed.command == "install"
        assert parsed.target_version == "0.I"
        assert parsed.game_dir == tmp_path
        assert parsed.size == 42
        assert parsed.retries == 0

    def test_install_requires_url(self, tmp_path: Path) -> None:
        """Test that missing required arguments exit with usage."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["install", "--game-dir", str(tmp_path)])

    def test_no_overrides_by_default(self, tmp_path: Path) -> None:
        """Test that unset flags leave configuration alone."""
        parsed = build_parser().parse_args(_install_args(tmp_path))
        assert _overrides(parsed) == {}

    def test_overrides(self, tmp_path: Path) -> None:
        """Test flag translation into configuration overrides."""
        parsed = build_parser().parse_args(
            _install_args(
                tmp_path,
                "--keep-saves",
                "--keep-backup",
                "--log-level",
                "debug",
                "--download-dir",
                str(tmp_path / "dl"),
            )
        )

        assert _overrides(parsed) == {
            "logging": {"level": "debug"},
            "migration": {"leave_saves_in_place": True, "auto_delete_backup": False},
            "download": {"directory": tmp_path / "dl"},
        }


# =============================================================================
# Output Tests
# =============================================================================


class TestRenderProgress:
    """Tests for render_progress."""

    def test_download(self) -> None:
        """Test byte counters and speed."""
        record = ProgressRecord(
            phase=ProgressPhase.DOWNLOAD,
            bytes_downloaded=1_500_000,
            total_bytes=3_000_000,
            speed=500_000,
        )
        assert render_progress(record) == "Downloading update... 1.5/3.0 MB (0.5 MB/s)"

    def test_download_unknown_size(self) -> None:
        """Test a download without a known total."""
        record = ProgressRecord(phase=ProgressPhase.DOWNLOAD, bytes_downloaded=2_000_000)
        assert render_progress(record) == "Downloading update... 2.0 MB"

    def test_item_phase(self) -> None:
        """Test item counters with the current file."""
        record = ProgressRecord(
            phase=ProgressPhase.EXTRACT,
            items_processed=3,
            total_items=10,
            current_file="data/json/items.json",
        )
        assert render_progress(record) == "Extracting new version... 3/10 data/json/items.json"

    def test_phase_only(self) -> None:
        """Test phases without counters."""
        assert render_progress(ProgressRecord(phase=ProgressPhase.COMPLETE)) == "Update complete!"


class TestExitCodes:
    """Tests for exit_code_for."""

    @pytest.mark.parametrize(
        "result,expected",
        [
            (MigrationResult.success("0.I"), EXIT_SUCCESS),
            (MigrationResult.operation_failure(NetworkError("down")), EXIT_RETRYABLE),
            (MigrationResult.operation_failure(MalformedArchiveError("bad")), EXIT_NON_RETRYABLE),
            (MigrationResult.operation_failure(FatalError("stuck")), EXIT_FATAL),
            (MigrationResult.task_failure(RuntimeError("bug")), EXIT_NON_RETRYABLE),
        ],
    )
    def test_mapping(self, result: MigrationResult, expected: int) -> None:
        """Test result to exit code mapping."""
        assert exit_code_for(result) == expected


# =============================================================================
# install Tests
# =============================================================================


class TestInstall:
    """Tests for the install command."""

    @pytest.mark.asyncio
    async def test_retries_retryable_failures(self, tmp_path: Path) -> None:
        """Test that retryable failures are attempted again."""
        parsed = build_parser().parse_args(
            _install_args(tmp_path, "--retries", "2", "--retry-delay", "0")
        )
        run_once = AsyncMock(
            side_effect=[
                MigrationResult.operation_failure(NetworkError("down")),
                MigrationResult.success("0.I"),
            ]
        )

        with patch("phoenix_updater.cli._run_once", run_once):
            assert await install(parsed, AppConfig()) == EXIT_SUCCESS

        assert run_once.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_failure_stops(self, tmp_path: Path) -> None:
        """Test that a malformed archive is not retried."""
        parsed = build_parser().parse_args(
            _install_args(tmp_path, "--retries", "3", "--retry-delay", "0")
        )
        run_once = AsyncMock(
            return_value=MigrationResult.operation_failure(MalformedArchiveError("bad"))
        )

        with patch("phoenix_updater.cli._run_once", run_once):
            assert await install(parsed, AppConfig()) == EXIT_NON_RETRYABLE

        assert run_once.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_asset(self, tmp_path: Path) -> None:
        """Test that an unsafe file name is rejected before running."""
        args = _install_args(tmp_path)
        args[args.index("cdda-0.I.zip")] = "../escape.zip"
        parsed = build_parser().parse_args(args)

        assert await install(parsed, AppConfig()) == EXIT_NON_RETRYABLE


# =============================================================================
# main Tests
# =============================================================================


class TestMain:
    """Tests for main."""

    def test_missing_config_file(self, tmp_path: Path) -> None:
        """Test that a missing configuration file is reported."""
        args = _install_args(tmp_path, "--config", str(tmp_path / "missing.yaml"))
        assert main(args) == EXIT_NON_RETRYABLE

    def test_invalid_config_file(self, tmp_path: Path) -> None:
        """Test that invalid configuration values are reported."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("download:\n  chunk_size: 1\n")

        args = _install_args(tmp_path, "--config", str(config_file))
        assert main(args) == EXIT_NON_RETRYABLE

    @pytest.mark.integration
    def test_install_end_to_end(
        self,
        tmp_path: Path,
        install_dir: Path,
        zip_bytes: Callable[[dict[str, bytes | str]], bytes],
        release_entries: dict[str, bytes | str],
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test a full install through the command line."""
        payload = zip_bytes(release_entries)
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=payload))
        )
        args = _install_args(install_dir, "--download-dir", str(tmp_path / "dl"))

        with (
            patch(
                "phoenix_updater.cli.MigrationEngine",
                lambda config: MigrationEngine(config, client),
            ),
            patch("phoenix_updater.cli.setup_logging"),
        ):
            assert main(args) == EXIT_SUCCESS

        assert (install_dir / "cataclysm-tiles").read_bytes() == b"new binary"
        assert (install_dir / "data" / "mods" / "user_mod").is_dir()
        assert "Installed version 0.I" in capsys.readouterr().err
