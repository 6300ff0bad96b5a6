"""
Migration engine: the full update pipeline for one installation.

Stages run strictly in order::

    download → backup → extract → migrate → cleanup

Nothing on disk is touched until the download completed, so failures before
the backup stage need no recovery. From the backup stage onward the
RollbackController owns the outcome: any error or cancellation restores the
previous installation before it is reported.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import httpx

from phoenix_updater.config import AppConfig
from phoenix_updater.errors import ConflictError, UpdateError
from phoenix_updater.logging import get_logger
from phoenix_updater.updates.access import (
    InstallationInfo,
    check_installation_access,
    detect_installation,
)
from phoenix_updater.updates.archiver import Archiver, retained_entries
from phoenix_updater.updates.cleanup import DeferredCleanup
from phoenix_updater.updates.download import Downloader, ReleaseAsset
from phoenix_updater.updates.extractor import extract, verify_extraction
from phoenix_updater.updates.planner import build_migration_plan
from phoenix_updater.updates.progress import ProgressChannel, ProgressPhase
from phoenix_updater.updates.restorer import Restorer
from phoenix_updater.updates.rollback import RollbackController
from phoenix_updater.updates.state_machine import MigrationStage

logger = get_logger(__name__)


# =============================================================================
# In-flight registry
# =============================================================================

_active_lock = threading.Lock()
_active_installations: set[Path] = set()


def _registry_key(install_dir: Path) -> Path:
    return install_dir.expanduser().resolve()


def claim_installation(install_dir: Path) -> Path:
    """
    Register a migration for ``install_dir``.

    Returns:
        The registry key to pass to ``release_installation``.

    Raises:
        ConflictError: If a migration is already running for the directory.
    """
    key = _registry_key(install_dir)
    with _active_lock:
        if key in _active_installations:
            raise ConflictError(
                f"A migration is already in progress for {install_dir}",
                details={"path": str(key)},
                stage="preflight",
            )
        _active_installations.add(key)
    return key


def release_installation(key: Path) -> None:
    with _active_lock:
        _active_installations.discard(key)


def is_migration_active(install_dir: Path) -> bool:
    """Whether a migration is running for ``install_dir``."""
    with _active_lock:
        return _registry_key(install_dir) in _active_installations


@contextlib.contextmanager
def _stage(name: str) -> Iterator[None]:
    """Attach ``name`` to any UpdateError raised inside the block."""
    try:
        yield
    except UpdateError as e:
        e.with_stage(name)
        raise


# =============================================================================
# Results
# =============================================================================


class MigrationOutcome(str, Enum):
    """How a background migration ended."""

    SUCCESS = "success"
    OPERATION_FAILURE = "operation_failure"
    TASK_FAILURE = "task_failure"


@dataclass(frozen=True)
class MigrationResult:
    """
    Terminal result of a migration.

    Attributes:
        outcome: Which variant this result is.
        version: Installed version (SUCCESS only).
        error: The UpdateError (OPERATION_FAILURE) or the unexpected
            exception / cancellation of the background task (TASK_FAILURE).
    """

    outcome: MigrationOutcome
    version: str | None = None
    error: BaseException | None = None

    @classmethod
    def success(cls, version: str) -> MigrationResult:
        return cls(outcome=MigrationOutcome.SUCCESS, version=version)

    @classmethod
    def operation_failure(cls, error: UpdateError) -> MigrationResult:
        return cls(outcome=MigrationOutcome.OPERATION_FAILURE, error=error)

    @classmethod
    def task_failure(cls, error: BaseException) -> MigrationResult:
        return cls(outcome=MigrationOutcome.TASK_FAILURE, error=error)

    @property
    def ok(self) -> bool:
        return self.outcome is MigrationOutcome.SUCCESS


class MigrationHandle:
    """
    Handle on a migration running as a background task.

    Attributes:
        progress: Latest-value progress channel of the migration.
    """

    def __init__(self, task: asyncio.Task[str], progress: ProgressChannel) -> None:
        self._task = task
        self.progress = progress

    def done(self) -> bool:
        return self._task.done()

    def poll(self) -> MigrationResult | None:
        """Return the result if the migration finished, else None."""
        if not self._task.done():
            return None
        if self._task.cancelled():
            return MigrationResult.task_failure(asyncio.CancelledError())
        error = self._task.exception()
        if isinstance(error, UpdateError):
            return MigrationResult.operation_failure(error)
        if error is not None:
            return MigrationResult.task_failure(error)
        return MigrationResult.success(self._task.result())

    async def wait(self) -> MigrationResult:
        """Wait for the migration to finish and return its result."""
        await asyncio.wait({self._task})
        result = self.poll()
        assert result is not None
        return result

    def cancel(self) -> bool:
        """
        Request cancellation.

        Before the backup stage this aborts immediately; afterwards the
        previous installation is restored before the task finishes.
        """
        return self._task.cancel()


# =============================================================================
# Engine
# =============================================================================


class MigrationEngine:
    """
    Runs updates of a game installation.

    Attributes:
        config: Application configuration.
        downloader: Release downloader.
        archiver: Backup slot archiver.
        restorer: User content restorer.
        cleanup: Deferred removal of consumed backup slots.

    Example:
        >>> engine = MigrationEngine(load_config())
        >>> installation = detect_installation("/games/cdda", ["cataclysm-tiles"])
        >>> version = await engine.run(asset, installation)
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the MigrationEngine.

        Args:
            config: Application configuration.
            client: Optional HTTP client shared by all downloads.
        """
        self.config = config or AppConfig()
        self.downloader = Downloader(self.config.download, client)
        self.archiver = Archiver(self.config)
        self.restorer = Restorer(self.config)
        self.cleanup = DeferredCleanup(
            self.config.archive,
            auto_delete=self.config.migration.auto_delete_backup,
            keep=retained_entries(self.config),
        )

    async def run(
        self,
        asset: ReleaseAsset,
        installation: InstallationInfo,
        progress: ProgressChannel | None = None,
    ) -> str:
        """
        Update ``installation`` to ``asset``.

        Args:
            asset: Release asset to install.
            installation: Target installation.
            progress: Optional channel receiving progress records.

        Returns:
            The installed version identifier.

        Raises:
            ConflictError: If a migration is already running for the
                installation.
            UpdateError: The error of the failed stage, after the previous
                installation was restored; FatalError if it could not be.
        """
        key = claim_installation(installation.root)
        try:
            return await self._run_claimed(asset, installation, progress)
        finally:
            release_installation(key)

    def start(
        self,
        asset: ReleaseAsset,
        installation: InstallationInfo,
    ) -> MigrationHandle:
        """
        Launch the migration as a background task.

        Raises:
            ConflictError: If a migration is already running for the
                installation.
        """
        loop = asyncio.get_running_loop()
        progress = ProgressChannel()
        key = claim_installation(installation.root)

        task = loop.create_task(self._run_claimed(asset, installation, progress))
        # Runs even if the task is cancelled before its first step
        task.add_done_callback(lambda _: release_installation(key))
        return MigrationHandle(task, progress)

    async def drain(self) -> None:
        """Wait for background deletion of previous installations."""
        await self.cleanup.drain()

    async def _run_claimed(
        self,
        asset: ReleaseAsset,
        installation: InstallationInfo,
        progress: ProgressChannel | None,
    ) -> str:
        start = time.monotonic()
        logger.info(
            f"Starting update to {asset.version}",
            extra={"path": str(installation.root), "asset": asset.file_name},
        )
        try:
            version = await self._pipeline(asset, installation, progress)
        except BaseException as e:
            if progress is not None:
                progress.report(ProgressPhase.FAILED)
            if isinstance(e, UpdateError):
                logger.error(
                    f"Update failed: {e.message}",
                    extra={"error": e.to_dict()},
                )
            raise

        logger.info(
            f"Update to {version} complete in {time.monotonic() - start:.1f}s",
            extra={"path": str(installation.root)},
        )
        return version

    async def _pipeline(
        self,
        asset: ReleaseAsset,
        installation: InstallationInfo,
        progress: ProgressChannel | None,
    ) -> str:
        install_dir = installation.root
        executables = self.config.game.executable_names

        with _stage("preflight"):
            check_installation_access(installation, executables)

        with _stage("download"):
            download = await self.downloader.download(asset, progress=progress)

        with _stage("preflight"):
            # The game may have been started while the download ran
            current = await asyncio.to_thread(detect_installation, install_dir, executables)
            check_installation_access(current, executables)

        controller = RollbackController(install_dir)
        async with controller.guard():
            with _stage("backup"):
                backup_slot = await self.archiver.archive(install_dir, progress)
                controller.mark_archived(backup_slot)

            with _stage("extract"):
                extract_start = time.monotonic()
                entries = await extract(
                    download.file_path,
                    install_dir,
                    progress,
                    self.config.extract.batch_size,
                )
                verify_extraction(install_dir, executables)
                logger.info(
                    f"Extracted {entries} entries in {time.monotonic() - extract_start:.1f}s",
                    extra={"archive": str(download.file_path)},
                )
                controller.advance(MigrationStage.EXTRACTED)

            with _stage("migrate"):
                controller.advance(MigrationStage.MIGRATING)
                migration_plan = await build_migration_plan(
                    backup_slot, install_dir, self.config
                )
                await self.restorer.restore(
                    backup_slot, install_dir, migration_plan, progress
                )
                controller.advance(MigrationStage.COMPLETED)

        if progress is not None:
            progress.report(ProgressPhase.CLEANUP)
        try:
            self.cleanup.finalize(install_dir, backup_slot)
        except UpdateError as e:
            # The new installation is complete; the slot is picked up next time
            logger.warning(
                f"Could not mark previous installation for deletion: {e.message}",
                extra={"backup_slot": str(backup_slot)},
            )

        if progress is not None:
            progress.report(ProgressPhase.COMPLETE)
        return asset.version
