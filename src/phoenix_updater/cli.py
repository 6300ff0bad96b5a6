"""
Command-line interface for the Phoenix update engine.

Usage:
    phoenix-updater install --url URL --file-name NAME --version V --game-dir DIR

Exit codes:
    0  update installed
    1  failed, retrying may succeed (previous installation intact)
    2  failed, retrying the same release will not help
    3  automatic recovery failed, manual intervention required
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from phoenix_updater import __version__
from phoenix_updater.config import AppConfig, load_config
from phoenix_updater.errors import FatalError, UpdateError
from phoenix_updater.logging import get_logger, setup_logging
from phoenix_updater.updates.access import detect_installation
from phoenix_updater.updates.download import ReleaseAsset
from phoenix_updater.updates.engine import MigrationEngine, MigrationOutcome, MigrationResult
from phoenix_updater.updates.progress import ProgressPhase, ProgressRecord

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_RETRYABLE = 1
EXIT_NON_RETRYABLE = 2
EXIT_FATAL = 3

POLL_INTERVAL_SECONDS = 0.1


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="phoenix-updater",
        description="Update a game installation while keeping saves and custom content",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)
    install = subparsers.add_parser(
        "install",
        help="Download and install a release",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    install.add_argument("--url", required=True, help="Release asset URL")
    install.add_argument("--file-name", required=True, help="Release asset file name")
    install.add_argument(
        "--version",
        dest="target_version",
        required=True,
        help="Version identifier of the release",
    )
    install.add_argument(
        "--game-dir", type=Path, required=True, help="Game installation directory"
    )
    install.add_argument("--size", type=int, help="Expected asset size in bytes")
    install.add_argument(
        "--keep-saves",
        action="store_true",
        help="Leave saves in the previous installation instead of moving them",
    )
    install.add_argument(
        "--keep-backup",
        action="store_true",
        help="Do not delete the previous installation after a successful update",
    )
    install.add_argument(
        "--retries",
        type=int,
        default=0,
        help="Retry retryable failures this many times",
    )
    install.add_argument(
        "--retry-delay",
        type=float,
        default=2.0,
        help="Seconds to wait between attempts",
    )
    install.add_argument("--download-dir", type=Path, help="Download directory")
    install.add_argument("--config", "-c", type=Path, help="Path to configuration file")
    install.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    return parser


def _overrides(parsed: argparse.Namespace) -> dict[str, Any]:
    """Translate command-line flags into configuration overrides."""
    result: dict[str, Any] = {}

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    migration: dict[str, Any] = {}
    if parsed.keep_saves:
        migration["leave_saves_in_place"] = True
    if parsed.keep_backup:
        migration["auto_delete_backup"] = False
    if migration:
        result["migration"] = migration

    if parsed.download_dir:
        result["download"] = {"directory": parsed.download_dir}

    return result


def render_progress(record: ProgressRecord) -> str:
    """Format a progress record as a single status line."""
    text = record.phase.description()
    if record.phase is ProgressPhase.DOWNLOAD:
        done = record.bytes_downloaded / 1_000_000
        if record.total_bytes:
            text += f" {done:.1f}/{record.total_bytes / 1_000_000:.1f} MB"
        else:
            text += f" {done:.1f} MB"
        if record.speed:
            text += f" ({record.speed / 1_000_000:.1f} MB/s)"
    elif record.total_items:
        text += f" {record.items_processed}/{record.total_items}"
        if record.current_file:
            text += f" {record.current_file}"
    return text


def exit_code_for(result: MigrationResult) -> int:
    """Map a migration result onto a process exit code."""
    if result.ok:
        return EXIT_SUCCESS
    error = result.error
    if isinstance(error, FatalError):
        return EXIT_FATAL
    if isinstance(error, UpdateError):
        return EXIT_RETRYABLE if error.retryable else EXIT_NON_RETRYABLE
    return EXIT_NON_RETRYABLE


def _report_failure(result: MigrationResult) -> None:
    error = result.error
    if isinstance(error, UpdateError):
        print(f"Update failed: {error.message}", file=sys.stderr)
        print(error.user_hint(), file=sys.stderr)
    elif result.outcome is MigrationOutcome.TASK_FAILURE:
        print(f"Update aborted: {error!r}", file=sys.stderr)


async def _run_once(
    engine: MigrationEngine,
    asset: ReleaseAsset,
    game_dir: Path,
) -> MigrationResult:
    installation = await asyncio.to_thread(
        detect_installation, game_dir, engine.config.game.executable_names
    )
    try:
        handle = engine.start(asset, installation)
    except UpdateError as e:
        return MigrationResult.operation_failure(e)

    seen = 0
    while not handle.done():
        seen, record = handle.progress.read_if_changed(seen)
        if record is not None:
            print(f"\r{render_progress(record):<79}", end="", file=sys.stderr, flush=True)
        await asyncio.sleep(POLL_INTERVAL_SECONDS)
    print(file=sys.stderr)

    return await handle.wait()


async def install(parsed: argparse.Namespace, config: AppConfig) -> int:
    """
    Run the install command.

    Returns:
        Process exit code.
    """
    try:
        asset = ReleaseAsset(
            url=parsed.url,
            file_name=parsed.file_name,
            size=parsed.size,
            version=parsed.target_version,
        )
    except ValidationError as e:
        print(f"Invalid release asset: {e}", file=sys.stderr)
        return EXIT_NON_RETRYABLE

    engine = MigrationEngine(config)

    attempts = max(parsed.retries, 0) + 1
    result = MigrationResult.task_failure(RuntimeError("not started"))
    for attempt in range(1, attempts + 1):
        result = await _run_once(engine, asset, parsed.game_dir)
        if result.ok or exit_code_for(result) != EXIT_RETRYABLE or attempt == attempts:
            break
        logger.warning(
            f"Attempt {attempt}/{attempts} failed, retrying in {parsed.retry_delay:.0f}s",
            extra={"error": str(result.error)},
        )
        await asyncio.sleep(parsed.retry_delay)

    if result.ok:
        print(f"Installed version {result.version}", file=sys.stderr)
        if engine.cleanup.pending:
            print("Removing previous installation...", file=sys.stderr)
        await engine.drain()
    else:
        _report_failure(result)

    return exit_code_for(result)


def main(argv: list[str] | None = None) -> int:
    """Entry point of the ``phoenix-updater`` command."""
    parsed = build_parser().parse_args(argv)

    try:
        config = load_config(parsed.config, overrides=_overrides(parsed))
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_NON_RETRYABLE

    setup_logging(config.logging)

    if parsed.command == "install":
        return asyncio.run(install(parsed, config))
    return EXIT_NON_RETRYABLE


if __name__ == "__main__":
    sys.exit(main())
