"""
Read-only snapshots of the content present under a category root.

A snapshot lists the identities found under one category root of one
installation tree without copying anything. Duplicate identities are kept so
the planner can apply its tie-break rule.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from phoenix_updater.config import GameConfig
from phoenix_updater.logging import get_logger
from phoenix_updater.updates.identity import CategoryRoot, ContentIdentity, identify

logger = get_logger(__name__)


@dataclass(frozen=True)
class SnapshotEntry:
    """One identified item under a category root."""

    identity: ContentIdentity
    path: Path
    mtime: float

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class DirectorySnapshot:
    """
    Identities present under a category root of one installation tree.

    Attributes:
        root: The category root that was scanned.
        tree: The installation tree (active directory or backup slot).
        entries: Every identified item, duplicates included.
    """

    root: CategoryRoot
    tree: Path
    entries: tuple[SnapshotEntry, ...] = field(default_factory=tuple)

    @property
    def directory(self) -> Path:
        """Absolute path of the scanned root."""
        return self.root.resolve(self.tree)

    @property
    def identities(self) -> frozenset[ContentIdentity]:
        """Distinct identities in the snapshot."""
        return frozenset(entry.identity for entry in self.entries)

    def entries_for(self, identity: ContentIdentity) -> list[SnapshotEntry]:
        """All entries resolving to ``identity``."""
        return [entry for entry in self.entries if entry.identity == identity]

    def __len__(self) -> int:
        return len(self.entries)


def scan_category(
    root: CategoryRoot,
    tree: Path,
    game: GameConfig | None = None,
) -> DirectorySnapshot:
    """
    Enumerate the identities under one category root.

    A missing root yields an empty snapshot. Items without a recognisable
    identity are ignored.

    Args:
        root: Category root to scan.
        tree: Installation tree containing the root.
        game: Game layout configuration.

    Returns:
        DirectorySnapshot of the root.
    """
    directory = root.resolve(tree)
    if not directory.is_dir():
        return DirectorySnapshot(root=root, tree=tree)

    entries: list[SnapshotEntry] = []
    for item in sorted(directory.iterdir()):
        identity = identify(root, item, game)
        if identity is None:
            continue
        try:
            mtime = item.stat().st_mtime
        except OSError:
            mtime = 0.0
        entries.append(SnapshotEntry(identity=identity, path=item, mtime=mtime))

    logger.debug(
        f"Scanned {len(entries)} items in {root.label}",
        extra={"tree": str(tree), "category": root.category.value},
    )
    return DirectorySnapshot(root=root, tree=tree, entries=tuple(entries))


async def scan_categories(
    roots: Iterable[CategoryRoot],
    old_tree: Path,
    new_tree: Path,
    game: GameConfig | None = None,
) -> list[tuple[DirectorySnapshot, DirectorySnapshot]]:
    """
    Snapshot several category roots in both trees concurrently.

    Roots touch disjoint subtrees and scanning is read-only, so every scan
    runs on its own worker thread.

    Returns:
        ``(old_snapshot, new_snapshot)`` pairs in the order of ``roots``.
    """
    roots = list(roots)
    scans = []
    for root in roots:
        scans.append(asyncio.to_thread(scan_category, root, old_tree, game))
        scans.append(asyncio.to_thread(scan_category, root, new_tree, game))

    results = await asyncio.gather(*scans)
    return [(results[i], results[i + 1]) for i in range(0, len(results), 2)]
