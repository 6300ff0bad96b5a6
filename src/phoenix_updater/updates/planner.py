"""
Migration planning: which user content is carried into the new version.

For every category root the plan is the set difference of identities::

    plan(old, new) = old.identities - new.identities

Official content bundled with the new version is therefore never replaced by
its stale copy from the previous installation. Planning only reads
snapshots; nothing is copied here.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from phoenix_updater.config import AppConfig, MigrationConfig
from phoenix_updater.logging import get_logger
from phoenix_updater.updates.identity import (
    CATEGORY_ROOTS,
    CategoryRoot,
    ContentCategory,
    ContentIdentity,
    IdentityRule,
    file_digest,
)
from phoenix_updater.updates.snapshot import (
    DirectorySnapshot,
    SnapshotEntry,
    scan_categories,
)

logger = get_logger(__name__)

USER_DEFAULT_MODS_FILE = "user-default-mods.json"


@dataclass(frozen=True)
class SoundpackMerge:
    """Custom files to copy into a soundpack present in both versions."""

    identity: ContentIdentity
    old_path: Path
    new_path: Path
    files: tuple[PurePosixPath, ...]


@dataclass(frozen=True)
class CategoryPlan:
    """
    Plan for one category root.

    Attributes:
        root: The category root planned.
        carry: Items to copy from the backup slot, one per identity.
        discarded: Duplicate items dropped by the tie-break rule.
        merges: Soundpacks present in both trees that need custom files.
        shadowed: Old items whose name collides with different official content.
    """

    root: CategoryRoot
    carry: tuple[SnapshotEntry, ...] = ()
    discarded: tuple[SnapshotEntry, ...] = ()
    merges: tuple[SoundpackMerge, ...] = ()
    shadowed: tuple[SnapshotEntry, ...] = ()

    @property
    def identities(self) -> frozenset[ContentIdentity]:
        return frozenset(entry.identity for entry in self.carry)

    @property
    def is_empty(self) -> bool:
        return not self.carry and not self.merges


@dataclass
class MigrationPlan:
    """Plans for every enabled category root of one migration."""

    categories: list[CategoryPlan] = field(default_factory=list)
    restore_user_default_mods: bool = False

    def for_category(self, category: ContentCategory) -> list[CategoryPlan]:
        return [plan for plan in self.categories if plan.root.category is category]

    @property
    def item_count(self) -> int:
        """Number of copy operations the plan will perform."""
        total = sum(
            len(plan.carry) + sum(len(m.files) for m in plan.merges)
            for plan in self.categories
        )
        return total + int(self.restore_user_default_mods)


def plan(
    old_snapshot: DirectorySnapshot,
    new_snapshot: DirectorySnapshot,
) -> frozenset[ContentIdentity]:
    """Identities present in the old snapshot but absent from the new one."""
    return old_snapshot.identities - new_snapshot.identities


def _select_newest(entries: list[SnapshotEntry]) -> tuple[SnapshotEntry, list[SnapshotEntry]]:
    """Pick the most recently modified entry; return it and the rest."""
    ordered = sorted(entries, key=lambda e: (e.mtime, str(e.path)), reverse=True)
    return ordered[0], ordered[1:]


def _content_files(directory: Path, extensions: set[str]) -> set[PurePosixPath]:
    """Relative paths of files under ``directory`` with a content extension."""
    files: set[PurePosixPath] = set()
    if not directory.is_dir():
        return files
    for path in directory.rglob("*"):
        if path.is_file() and path.suffix.lower().lstrip(".") in extensions:
            files.add(PurePosixPath(path.relative_to(directory).as_posix()))
    return files


def _soundpack_merges(
    old_snapshot: DirectorySnapshot,
    new_snapshot: DirectorySnapshot,
    extensions: Iterable[str],
) -> list[SoundpackMerge]:
    ext_set = {e.lower() for e in extensions}
    merges: list[SoundpackMerge] = []
    shared = old_snapshot.identities & new_snapshot.identities

    for identity in sorted(shared):
        old_entry, _ = _select_newest(old_snapshot.entries_for(identity))
        new_entry, _ = _select_newest(new_snapshot.entries_for(identity))
        custom = _content_files(old_entry.path, ext_set) - _content_files(
            new_entry.path, ext_set
        )
        if custom:
            logger.debug(
                f"Soundpack '{identity.key}' has {len(custom)} custom files to merge",
                extra={"identity": str(identity)},
            )
            merges.append(
                SoundpackMerge(
                    identity=identity,
                    old_path=old_entry.path,
                    new_path=new_entry.path,
                    files=tuple(sorted(custom)),
                )
            )
    return merges


def _shadowed_fonts(
    old_snapshot: DirectorySnapshot,
    new_snapshot: DirectorySnapshot,
) -> list[SnapshotEntry]:
    """Old fonts sharing a name with an official font but not its content."""
    shadowed: list[SnapshotEntry] = []
    for identity in sorted(old_snapshot.identities & new_snapshot.identities):
        old_entry, _ = _select_newest(old_snapshot.entries_for(identity))
        new_entry, _ = _select_newest(new_snapshot.entries_for(identity))
        try:
            differs = file_digest(old_entry.path) != file_digest(new_entry.path)
        except OSError:
            continue
        if differs:
            shadowed.append(old_entry)
    return shadowed


def plan_category(
    old_snapshot: DirectorySnapshot,
    new_snapshot: DirectorySnapshot,
    migration: MigrationConfig | None = None,
) -> CategoryPlan:
    """
    Build the plan for one category root.

    When two items in the old snapshot share an identity, the most recently
    modified one is carried and the other is logged and discarded; a
    duplicate never aborts the migration.

    Args:
        old_snapshot: Snapshot of the root in the backup slot.
        new_snapshot: Snapshot of the root in the freshly extracted tree.
        migration: Migration configuration (soundpack merge settings).

    Returns:
        CategoryPlan for the root.
    """
    migration = migration or MigrationConfig()
    root = old_snapshot.root
    carry_ids = plan(old_snapshot, new_snapshot)

    carry: list[SnapshotEntry] = []
    discarded: list[SnapshotEntry] = []
    for identity in sorted(carry_ids):
        chosen, rest = _select_newest(old_snapshot.entries_for(identity))
        carry.append(chosen)
        for dropped in rest:
            logger.warning(
                f"Duplicate {root.category.value} identity '{identity.key}', "
                f"keeping {chosen.path.name}",
                extra={
                    "identity": str(identity),
                    "kept": str(chosen.path),
                    "discarded": str(dropped.path),
                },
            )
        discarded.extend(rest)

    merges: list[SoundpackMerge] = []
    if root.category is ContentCategory.SOUNDPACKS and migration.merge_soundpack_files:
        merges = _soundpack_merges(
            old_snapshot, new_snapshot, migration.soundpack_content_extensions
        )

    shadowed: list[SnapshotEntry] = []
    if root.rule is IdentityRule.RELATIVE_PATH:
        shadowed = _shadowed_fonts(old_snapshot, new_snapshot)
        for entry in shadowed:
            logger.info(
                f"Keeping official {entry.name}; the previous copy differs",
                extra={"identity": str(entry.identity), "path": str(entry.path)},
            )

    logger.info(
        f"Found {len(carry)} custom items out of {len(old_snapshot.identities)} "
        f"in {root.label}",
        extra={"category": root.category.value, "root": str(root.relative_root)},
    )

    return CategoryPlan(
        root=root,
        carry=tuple(carry),
        discarded=tuple(discarded),
        merges=tuple(merges),
        shadowed=tuple(shadowed),
    )


def enabled_roots(migration: MigrationConfig) -> list[CategoryRoot]:
    """Category roots whose category is enabled in configuration."""
    return [
        root for root in CATEGORY_ROOTS if getattr(migration, root.category.value, False)
    ]


async def build_migration_plan(
    backup_slot: Path,
    install_dir: Path,
    config: AppConfig | None = None,
) -> MigrationPlan:
    """
    Plan the migration of every enabled identity-based category.

    Args:
        backup_slot: The previous installation tree.
        install_dir: The freshly extracted installation tree.
        config: Application configuration.

    Returns:
        MigrationPlan covering all enabled category roots.
    """
    config = config or AppConfig()
    roots = enabled_roots(config.migration)
    pairs = await scan_categories(roots, backup_slot, install_dir, config.game)

    migration_plan = MigrationPlan(
        categories=[plan_category(old, new, config.migration) for old, new in pairs]
    )

    if config.migration.mods:
        old_defaults = backup_slot / "data" / "mods" / USER_DEFAULT_MODS_FILE
        new_defaults = install_dir / "data" / "mods" / USER_DEFAULT_MODS_FILE
        migration_plan.restore_user_default_mods = (
            old_defaults.is_file() and not new_defaults.exists()
        )

    return migration_plan
