"""
Archiving of the current installation into its backup slot.

The whole installation tree is moved aside with one same-volume rename; no
byte is copied and nothing is deleted synchronously except stale slots left
by earlier migrations.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

from phoenix_updater.config import AppConfig
from phoenix_updater.errors import IoError
from phoenix_updater.logging import get_logger
from phoenix_updater.updates.cleanup import (
    backup_slot_path,
    find_stale_slots,
    new_stale_slot_path,
    purge_stale_slots,
)
from phoenix_updater.updates.operations import atomic_rename
from phoenix_updater.updates.progress import ProgressChannel, ProgressPhase

logger = get_logger(__name__)


def retained_entries(config: AppConfig) -> tuple[str, ...]:
    """Top-level slot entries that purges must keep under current settings."""
    if config.migration.leave_saves_in_place:
        return (config.game.save_directory,)
    return ()


class Archiver:
    """
    Moves an installation tree into its backup slot.

    Example:
        >>> archiver = Archiver(config)
        >>> slot = await archiver.archive(Path("/games/cdda"))
        >>> slot
        PosixPath('/games/cdda.phoenix_archive')
    """

    def __init__(self, config: AppConfig | None = None) -> None:
        self.config = config or AppConfig()

    async def prepare_slot(self, install_dir: Path) -> Path:
        """
        Make sure the backup slot path is free.

        A backup slot left by an interrupted run is renamed aside to a stale
        slot, then every stale slot of the installation is purged.

        Returns:
            The vacant backup slot path.

        Raises:
            IoError: If a leftover backup slot cannot be renamed aside.
        """
        slot = backup_slot_path(install_dir, self.config.archive)

        if slot.exists() or slot.is_symlink():
            aside = new_stale_slot_path(install_dir, self.config.archive)
            logger.warning(
                "Found backup slot from an earlier incomplete run; marking it stale",
                extra={"path": str(slot), "stale_path": str(aside)},
            )
            atomic_rename(slot, aside)

        stale = find_stale_slots(install_dir, self.config.archive)
        if stale:
            logger.info(
                f"Removing {len(stale)} stale slot(s) before archiving",
                extra={"paths": [str(p) for p in stale]},
            )
            try:
                await asyncio.to_thread(
                    purge_stale_slots,
                    install_dir,
                    self.config.archive,
                    retained_entries(self.config),
                )
            except OSError as e:
                # Stale slots never occupy the backup slot path
                logger.warning(
                    f"Failed to remove stale slots: {e}",
                    extra={"paths": [str(p) for p in stale]},
                )

        return slot

    async def archive(
        self,
        install_dir: Path,
        progress: ProgressChannel | None = None,
    ) -> Path:
        """
        Move ``install_dir`` into its backup slot.

        The rename is the last step of this coroutine, so a caller resuming
        from it always observes either the untouched tree or the committed
        slot.

        Args:
            install_dir: The installation tree.
            progress: Optional channel receiving a BACKUP record.

        Returns:
            The backup slot path now holding the previous installation.

        Raises:
            IoError: If the tree is missing, the slot is on another volume,
                or the rename fails.
            BusyError: If the tree is locked by another process.
        """
        if not install_dir.is_dir():
            raise IoError(
                f"Installation directory not found: {install_dir}",
                details={"path": str(install_dir)},
            )

        if progress is not None:
            progress.report(ProgressPhase.BACKUP, current_file=install_dir.name)

        slot = await self.prepare_slot(install_dir)

        start = time.monotonic()
        atomic_rename(install_dir, slot)
        logger.info(
            f"Archived installation in {time.monotonic() - start:.2f}s",
            extra={"path": str(install_dir), "backup_slot": str(slot)},
        )
        return slot
