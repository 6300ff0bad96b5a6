"""
Deferred removal of previous installations.

After a successful migration the backup slot is renamed to a stale marker
(an instant same-volume rename) and deleted on a background task, so the
user sees the update complete without waiting for the old tree to be
removed. Deletion is keyed by the marker name alone: any stale slot left
behind by a crash or a failed background task is picked up again by the next
migration's precondition check.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from phoenix_updater.config import ArchiveConfig
from phoenix_updater.logging import get_logger
from phoenix_updater.updates.operations import atomic_rename, remove_path

logger = get_logger(__name__)


def backup_slot_path(install_dir: Path, config: ArchiveConfig | None = None) -> Path:
    """Path of the backup slot for ``install_dir`` (a sibling directory)."""
    config = config or ArchiveConfig()
    return install_dir.parent / f"{install_dir.name}{config.backup_suffix}"


def new_stale_slot_path(install_dir: Path, config: ArchiveConfig | None = None) -> Path:
    """A fresh, unique stale-slot path for ``install_dir``."""
    config = config or ArchiveConfig()
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    return install_dir.parent / (
        f"{install_dir.name}{config.stale_marker}-{stamp}-{uuid.uuid4().hex[:8]}"
    )


def find_stale_slots(install_dir: Path, config: ArchiveConfig | None = None) -> list[Path]:
    """All stale slots belonging to ``install_dir``."""
    config = config or ArchiveConfig()
    parent = install_dir.parent
    if not parent.is_dir():
        return []
    prefix = f"{install_dir.name}{config.stale_marker}"
    return sorted(p for p in parent.iterdir() if p.name.startswith(prefix))


def purge_stale_slot(slot: Path, keep: Iterable[str] = ()) -> bool:
    """
    Delete a stale slot, retaining any top-level entries named in ``keep``.

    The slot directory itself is removed only once it is empty. Calling this
    on a missing or already purged slot is a no-op.

    Args:
        slot: Stale slot directory.
        keep: Top-level entry names that must survive (e.g. the save
            directory when saves are left in place).

    Returns:
        True if the slot no longer exists afterwards.

    Raises:
        OSError: If an entry cannot be removed.
    """
    if not slot.exists():
        return True

    retained = set(keep)
    if not retained:
        remove_path(slot)
        return True

    for entry in list(slot.iterdir()):
        if entry.name not in retained:
            remove_path(entry)

    if any(slot.iterdir()):
        logger.info(
            "Stale slot retained with preserved entries",
            extra={"path": str(slot), "kept": sorted(retained)},
        )
        return False

    slot.rmdir()
    return True


def purge_stale_slots(
    install_dir: Path,
    config: ArchiveConfig | None = None,
    keep: Iterable[str] = (),
) -> int:
    """
    Purge every stale slot of ``install_dir``.

    Returns:
        Number of slots fully removed.

    Raises:
        OSError: If a slot cannot be purged.
    """
    keep = tuple(keep)
    removed = 0
    for slot in find_stale_slots(install_dir, config):
        if purge_stale_slot(slot, keep):
            removed += 1
    return removed


class DeferredCleanup:
    """
    Marks backup slots stale and deletes them in the background.

    Background tasks are tracked so callers (tests, a CLI about to exit) can
    wait for them with ``drain()``.
    """

    def __init__(
        self,
        config: ArchiveConfig | None = None,
        *,
        auto_delete: bool = True,
        keep: Iterable[str] = (),
    ) -> None:
        """
        Initialize DeferredCleanup.

        Args:
            config: Slot naming configuration.
            auto_delete: Schedule background deletion of stale slots.
            keep: Top-level entries never deleted from a stale slot.
        """
        self._config = config or ArchiveConfig()
        self._auto_delete = auto_delete
        self._keep = tuple(keep)
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of background deletions still running."""
        return len(self._tasks)

    def finalize(self, install_dir: Path, backup_slot: Path) -> Path:
        """
        Rename the backup slot to a stale marker and schedule its deletion.

        Must be called from a running event loop when auto deletion is on.

        Args:
            install_dir: The installation the slot belongs to.
            backup_slot: The consumed backup slot.

        Returns:
            The stale slot path.

        Raises:
            IoError: If the rename fails.
        """
        stale = new_stale_slot_path(install_dir, self._config)
        atomic_rename(backup_slot, stale)
        logger.info(
            "Previous installation marked for deletion",
            extra={"path": str(stale)},
        )

        if self._auto_delete:
            task = asyncio.get_running_loop().create_task(self._delete(stale))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return stale

    async def _delete(self, stale: Path) -> None:
        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            await asyncio.to_thread(purge_stale_slot, stale, self._keep)
        except OSError as e:
            logger.warning(
                f"Failed to remove previous installation: {e}",
                extra={"path": str(stale)},
            )
            return
        logger.info(
            f"Background cleanup complete in {loop.time() - start:.1f}s",
            extra={"path": str(stale)},
        )

    async def drain(self) -> None:
        """Wait for every scheduled deletion to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
