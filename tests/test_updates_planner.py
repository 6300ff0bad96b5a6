"""
Tests for migration planning.

Tests cover:
- plan() set difference and disjointness from the new tree
- Duplicate tie-break by modification time
- Empty snapshots
- Soundpack merges and shadowed fonts
- build_migration_plan over whole trees
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path, PurePosixPath

import pytest

from phoenix_updater.config import AppConfig, MigrationConfig
from phoenix_updater.updates.identity import (
    CategoryRoot,
    ContentCategory,
    ContentIdentity,
    IdentityRule,
)
from phoenix_updater.updates.planner import (
    build_migration_plan,
    enabled_roots,
    plan,
    plan_category,
)
from phoenix_updater.updates.snapshot import scan_category

MODS_ROOT = CategoryRoot(ContentCategory.MODS, PurePosixPath("data/mods"), IdentityRule.MOD_MANIFEST)
SOUND_ROOT = CategoryRoot(
    ContentCategory.SOUNDPACKS, PurePosixPath("data/sound"), IdentityRule.SOUNDPACK_MANIFEST
)
FONTS_ROOT = CategoryRoot(ContentCategory.FONTS, PurePosixPath("font"), IdentityRule.RELATIVE_PATH)


def _mod(key: str) -> ContentIdentity:
    return ContentIdentity(ContentCategory.MODS, key)


@pytest.fixture
def trees(tmp_path: Path) -> tuple[Path, Path]:
    """An (old, new) pair of empty installation trees."""
    old, new = tmp_path / "old", tmp_path / "new"
    old.mkdir()
    new.mkdir()
    return old, new


# =============================================================================
# plan Tests
# =============================================================================


class TestPlan:
    """Tests for the plan set difference."""

    def test_carries_only_custom_mods(
        self, trees: tuple[Path, Path], make_mod: Callable[..., Path]
    ) -> None:
        """Test old {A, B} and new {B, C} plans {A}."""
        old, new = trees
        make_mod(old / "data" / "mods", "a", "A")
        make_mod(old / "data" / "mods", "b", "B", payload="old B")
        make_mod(new / "data" / "mods", "b", "B", payload="new B")
        make_mod(new / "data" / "mods", "c", "C")

        old_snap = scan_category(MODS_ROOT, old)
        new_snap = scan_category(MODS_ROOT, new)

        assert plan(old_snap, new_snap) == {_mod("A")}

    def test_plan_disjoint_from_new(
        self, trees: tuple[Path, Path], make_mod: Callable[..., Path]
    ) -> None:
        """Test that no planned identity is present in the new tree."""
        old, new = trees
        for key in ("A", "B", "C", "D"):
            make_mod(old / "data" / "mods", key.lower(), key)
        for key in ("B", "D", "E"):
            make_mod(new / "data" / "mods", key.lower(), key)

        new_snap = scan_category(MODS_ROOT, new)
        planned = plan(scan_category(MODS_ROOT, old), new_snap)

        assert planned.isdisjoint(new_snap.identities)
        assert planned == {_mod("A"), _mod("C")}

    def test_empty_old_snapshot(self, trees: tuple[Path, Path], make_mod: Callable[..., Path]) -> None:
        """Test that an empty old snapshot plans nothing."""
        old, new = trees
        make_mod(new / "data" / "mods", "a", "A")
        assert plan(scan_category(MODS_ROOT, old), scan_category(MODS_ROOT, new)) == frozenset()

    def test_empty_new_snapshot(self, trees: tuple[Path, Path], make_mod: Callable[..., Path]) -> None:
        """Test that an empty new snapshot carries everything."""
        old, new = trees
        make_mod(old / "data" / "mods", "a", "A")
        make_mod(old / "data" / "mods", "b", "B")
        assert plan(scan_category(MODS_ROOT, old), scan_category(MODS_ROOT, new)) == {
            _mod("A"),
            _mod("B"),
        }


# =============================================================================
# plan_category Tests
# =============================================================================


class TestPlanCategory:
    """Tests for plan_category."""

    def test_duplicate_keeps_newest(
        self, trees: tuple[Path, Path], make_mod: Callable[..., Path]
    ) -> None:
        """Test that the most recently modified duplicate is carried."""
        old, new = trees
        older = make_mod(old / "data" / "mods", "a_old", "A")
        newer = make_mod(old / "data" / "mods", "a_new", "A")
        os.utime(older, (1_000_000, 1_000_000))
        os.utime(newer, (2_000_000, 2_000_000))

        result = plan_category(scan_category(MODS_ROOT, old), scan_category(MODS_ROOT, new))

        assert [e.path for e in result.carry] == [newer]
        assert [e.path for e in result.discarded] == [older]

    def test_soundpack_merge(
        self, trees: tuple[Path, Path], make_soundpack: Callable[..., Path]
    ) -> None:
        """Test that custom sound files in a shared soundpack are merged."""
        old, new = trees
        make_soundpack(
            old / "data" / "sound",
            "CC-Sounds",
            "CC-Sounds",
            {"music/mine.ogg": b"custom", "music/theme.ogg": b"theme", "readme.txt": b"x"},
        )
        make_soundpack(
            new / "data" / "sound", "CC-Sounds", "CC-Sounds", {"music/theme.ogg": b"theme2"}
        )

        result = plan_category(scan_category(SOUND_ROOT, old), scan_category(SOUND_ROOT, new))

        assert result.carry == ()
        assert len(result.merges) == 1
        assert result.merges[0].files == (PurePosixPath("music/mine.ogg"),)

    def test_soundpack_merge_disabled(
        self, trees: tuple[Path, Path], make_soundpack: Callable[..., Path]
    ) -> None:
        """Test that merging can be turned off."""
        old, new = trees
        make_soundpack(old / "data" / "sound", "P", "P", {"a.wav": b"1"})
        make_soundpack(new / "data" / "sound", "P", "P")

        result = plan_category(
            scan_category(SOUND_ROOT, old),
            scan_category(SOUND_ROOT, new),
            MigrationConfig(merge_soundpack_files=False),
        )

        assert result.merges == ()
        assert result.is_empty

    def test_font_collision_keeps_official(self, trees: tuple[Path, Path]) -> None:
        """Test that a differing same-name font is shadowed, not carried."""
        old, new = trees
        (old / "font").mkdir()
        (new / "font").mkdir()
        (old / "font" / "unifont.ttf").write_bytes(b"user edit")
        (old / "font" / "mine.ttf").write_bytes(b"mine")
        (new / "font" / "unifont.ttf").write_bytes(b"official")

        result = plan_category(scan_category(FONTS_ROOT, old), scan_category(FONTS_ROOT, new))

        assert [e.name for e in result.carry] == ["mine.ttf"]
        assert [e.name for e in result.shadowed] == ["unifont.ttf"]


# =============================================================================
# build_migration_plan Tests
# =============================================================================


class TestBuildMigrationPlan:
    """Tests for planning whole trees."""

    @pytest.mark.asyncio
    async def test_plan_across_categories(
        self,
        trees: tuple[Path, Path],
        make_mod: Callable[..., Path],
        make_tileset: Callable[..., Path],
    ) -> None:
        """Test that every enabled root is planned."""
        old, new = trees
        make_mod(old / "mods", "user", "user_mod")
        make_mod(old / "data" / "mods", "dda", "dda")
        make_mod(new / "data" / "mods", "dda", "dda")
        make_tileset(old / "gfx", "Mine", "Mine")
        (old / "data" / "mods" / "user-default-mods.json").write_text("[]")

        result = await build_migration_plan(old, new)

        carried = {str(e.identity) for p in result.categories for e in p.carry}
        assert carried == {"mods:user_mod", "tilesets:Mine"}
        assert result.restore_user_default_mods is True
        assert result.item_count == 3

    @pytest.mark.asyncio
    async def test_disabled_category_not_planned(
        self, trees: tuple[Path, Path], make_tileset: Callable[..., Path]
    ) -> None:
        """Test that disabled categories produce no plan."""
        old, new = trees
        make_tileset(old / "gfx", "Mine", "Mine")
        config = AppConfig(migration={"tilesets": False})

        result = await build_migration_plan(old, new, config)

        assert result.for_category(ContentCategory.TILESETS) == []

    def test_enabled_roots(self) -> None:
        """Test root filtering by configuration."""
        roots = enabled_roots(MigrationConfig(mods=False, fonts=False))
        categories = {r.category for r in roots}
        assert categories == {ContentCategory.TILESETS, ContentCategory.SOUNDPACKS}
