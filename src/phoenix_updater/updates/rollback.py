"""
Rollback of a migration to the archived installation.

Once the Archiver has committed, every failure (including cancellation of the
running task) must put the backup slot back at the installation path before
the error reaches the caller. The original error is re-raised unchanged; only
a failed restore is reported differently, as FatalError.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from pathlib import Path

from phoenix_updater.errors import FatalError, UpdateError
from phoenix_updater.logging import get_logger
from phoenix_updater.updates.operations import atomic_rename, remove_path
from phoenix_updater.updates.state_machine import MigrationStage, MigrationStateMachine

logger = get_logger(__name__)


class RollbackController:
    """
    Tracks migration stages and restores the backup slot on failure.

    Attributes:
        install_dir: The installation path.
        backup_slot: The backup slot, once archiving committed.
        state: Stage state machine.
    """

    def __init__(
        self,
        install_dir: Path,
        state: MigrationStateMachine | None = None,
    ) -> None:
        self.install_dir = install_dir
        self.backup_slot: Path | None = None
        self.state = state or MigrationStateMachine()

    @property
    def stage(self) -> MigrationStage:
        return self.state.stage

    def mark_archived(self, backup_slot: Path) -> None:
        """Record that the installation now lives in ``backup_slot``."""
        self.state.transition_to(MigrationStage.ARCHIVED)
        self.backup_slot = backup_slot

    def advance(self, stage: MigrationStage) -> None:
        """Move to the next stage of the migration."""
        self.state.transition_to(stage)

    def rollback(self) -> None:
        """
        Restore the backup slot to the installation path (blocking).

        Whatever partial tree exists at the installation path is deleted
        first.

        Raises:
            FatalError: If the partial tree cannot be removed or the slot
                cannot be renamed back.
        """
        slot = self.backup_slot
        details = {
            "backup_slot": str(slot),
            "install_dir": str(self.install_dir),
        }
        logger.warning("Rolling back to the previous installation", extra=details)

        try:
            if slot is None or not slot.exists():
                raise FileNotFoundError(f"Backup slot missing: {slot}")
            remove_path(self.install_dir)
            atomic_rename(slot, self.install_dir)
        except (OSError, UpdateError) as e:
            self.state.transition_to(MigrationStage.FATAL)
            logger.error(
                f"Rollback failed: {e}",
                extra={**details, "error": str(e)},
            )
            raise FatalError(
                f"Could not restore the previous installation: {e}",
                details={**details, "error": str(e)},
                stage="rollback",
            ) from e

        self.state.transition_to(MigrationStage.ROLLED_BACK)
        logger.info("Previous installation restored", extra=details)

    async def _rollback_to_completion(self) -> None:
        """Run ``rollback`` on a worker thread and wait for it even if cancelled."""
        task = asyncio.ensure_future(asyncio.to_thread(self.rollback))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            await task
            raise

    @contextlib.asynccontextmanager
    async def guard(self) -> AsyncIterator[RollbackController]:
        """
        Roll back on any exception raised inside the block.

        Exceptions raised before ``mark_archived`` pass through untouched.
        After it, the backup slot is restored and the original exception is
        re-raised; if the restore fails, FatalError is raised instead with the
        original exception as its cause.

        Example:
            >>> async with controller.guard():
            ...     slot = await archiver.archive(install_dir)
            ...     controller.mark_archived(slot)
            ...     await extract(archive, install_dir)
        """
        try:
            yield self
        except BaseException as exc:
            if not self.state.requires_rollback:
                raise
            logger.info(
                f"Migration failed at stage {self.stage.value}: {exc!r}",
                extra={"stage": self.stage.value},
            )
            try:
                await self._rollback_to_completion()
            except FatalError as fatal:
                raise fatal from exc
            raise
