"""
Restoring user content from the backup slot into the new installation.

Per-identity categories (mods, tilesets, soundpacks, fonts) follow the
MigrationPlan and never overwrite anything the new release ships. Saves and
user configuration are whole-directory categories: save directories replace
the extracted copy as a unit, and the configuration directory is copied over
the release defaults minus a denylist of transient files.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from phoenix_updater.config import AppConfig
from phoenix_updater.errors import UpdateError, wrap_os_error
from phoenix_updater.logging import get_logger
from phoenix_updater.updates.operations import (
    copy_item,
    copy_tree_filtered,
    remove_path,
    run_in_worker,
)
from phoenix_updater.updates.planner import USER_DEFAULT_MODS_FILE, MigrationPlan
from phoenix_updater.updates.progress import ProgressChannel, ProgressPhase

logger = get_logger(__name__)


@dataclass
class RestoreSummary:
    """What a restore did."""

    copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    merged_files: int = 0
    save_directories: list[str] = field(default_factory=list)
    config_restored: bool = False
    config_skipped: int = 0


class Restorer:
    """
    Copies carried-forward content from the backup slot into the new tree.

    Attributes:
        config: Application configuration.
    """

    def __init__(self, config: AppConfig | None = None) -> None:
        self.config = config or AppConfig()
        self._processed = 0
        self._total = 0
        self._progress: ProgressChannel | None = None

    def _tick(self, name: str) -> None:
        self._processed += 1
        if self._progress is not None:
            self._progress.report(
                ProgressPhase.MIGRATE,
                items_processed=min(self._processed, self._total),
                total_items=self._total,
                current_file=name,
            )

    def _save_sources(self, backup_slot: Path) -> list[Path]:
        migration = self.config.migration
        if not migration.saves:
            return []
        sources = []
        for name in migration.save_directories:
            if migration.leave_saves_in_place and name == self.config.game.save_directory:
                logger.info(
                    "Leaving saves in the previous installation",
                    extra={"path": str(backup_slot / name)},
                )
                continue
            source = backup_slot / name
            if source.is_dir():
                sources.append(source)
        return sources

    async def restore(
        self,
        backup_slot: Path,
        install_dir: Path,
        migration_plan: MigrationPlan,
        progress: ProgressChannel | None = None,
    ) -> RestoreSummary:
        """
        Execute a migration plan and restore whole-directory categories.

        Args:
            backup_slot: The previous installation tree.
            install_dir: The freshly extracted installation tree.
            migration_plan: Per-identity plan from the planner.
            progress: Optional channel receiving MIGRATE records.

        Returns:
            RestoreSummary of the copies performed.

        Raises:
            DiskFullError: If the disk fills up during a copy.
            IoError: If a copy fails.
        """
        start = time.monotonic()
        summary = RestoreSummary()
        saves = self._save_sources(backup_slot)
        config_source = backup_slot / self.config.migration.config_directory
        restore_config = self.config.migration.user_config and config_source.is_dir()

        self._progress = progress
        self._processed = 0
        self._total = migration_plan.item_count + len(saves) + int(restore_config)
        if progress is not None:
            progress.report(ProgressPhase.MIGRATE, total_items=self._total)

        try:
            await self._restore_identities(backup_slot, install_dir, migration_plan, summary)
            if migration_plan.restore_user_default_mods:
                await self._restore_user_default_mods(backup_slot, install_dir, summary)
            for source in saves:
                await self._restore_save_directory(source, install_dir / source.name)
                summary.save_directories.append(source.name)
                self._tick(source.name)
            if restore_config:
                summary.config_skipped = await run_in_worker(
                    copy_tree_filtered,
                    config_source,
                    install_dir / config_source.name,
                    self.config.migration.config_skip_files,
                    cancel_event=threading.Event(),
                )
                summary.config_restored = True
                self._tick(config_source.name)
        except OSError as e:
            raise wrap_os_error(
                e,
                "Failed to restore user content",
                stage="migrate",
                details={"backup_slot": str(backup_slot)},
            ) from e
        except UpdateError as e:
            raise e.with_stage("migrate")
        finally:
            self._progress = None

        logger.info(
            f"Restored {len(summary.copied)} items, {summary.merged_files} soundpack "
            f"files and {len(summary.save_directories)} save directories "
            f"in {time.monotonic() - start:.1f}s",
            extra={
                "skipped": len(summary.skipped),
                "config_restored": summary.config_restored,
            },
        )
        return summary

    async def _restore_identities(
        self,
        backup_slot: Path,
        install_dir: Path,
        migration_plan: MigrationPlan,
        summary: RestoreSummary,
    ) -> None:
        for category_plan in migration_plan.categories:
            for entry in category_plan.carry:
                relative = entry.path.relative_to(backup_slot)
                target = install_dir / relative
                copied = await run_in_worker(copy_item, entry.path, target)
                if copied:
                    summary.copied.append(str(entry.identity))
                    logger.debug(f"Restored {relative}", extra={"identity": str(entry.identity)})
                else:
                    summary.skipped.append(str(entry.identity))
                    logger.info(
                        f"Skipping {relative}: already present in the new version",
                        extra={"identity": str(entry.identity), "path": str(target)},
                    )
                self._tick(entry.name)

            for merge in category_plan.merges:
                for relative in merge.files:
                    source = merge.old_path.joinpath(*relative.parts)
                    target = merge.new_path.joinpath(*relative.parts)
                    if await run_in_worker(copy_item, source, target):
                        summary.merged_files += 1
                    self._tick(relative.name)
                logger.info(
                    f"Merged {len(merge.files)} custom files into soundpack "
                    f"'{merge.identity.key}'",
                    extra={"identity": str(merge.identity)},
                )

    async def _restore_user_default_mods(
        self,
        backup_slot: Path,
        install_dir: Path,
        summary: RestoreSummary,
    ) -> None:
        source = backup_slot / "data" / "mods" / USER_DEFAULT_MODS_FILE
        target = install_dir / "data" / "mods" / USER_DEFAULT_MODS_FILE
        if await run_in_worker(copy_item, source, target):
            summary.copied.append(USER_DEFAULT_MODS_FILE)
        self._tick(USER_DEFAULT_MODS_FILE)

    async def _restore_save_directory(self, source: Path, target: Path) -> None:
        """Replace ``target`` with a copy of ``source``."""

        def _replace() -> None:
            remove_path(target)
            copy_item(source, target)

        await run_in_worker(_replace)
        logger.info(f"Restored {source.name}", extra={"path": str(target)})
