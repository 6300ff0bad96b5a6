"""
Tests for restoring user content.

Tests cover:
- Per-identity copies from the plan
- Collision skips
- Saves (whole directory, leave in place)
- User config denylist
- Soundpack merges and user-default-mods.json
- Error mapping
"""

from __future__ import annotations

import errno
import json
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from phoenix_updater.config import AppConfig
from phoenix_updater.errors import DiskFullError
from phoenix_updater.updates.planner import build_migration_plan
from phoenix_updater.updates.progress import ProgressChannel, ProgressPhase
from phoenix_updater.updates.restorer import Restorer


@pytest.fixture
def trees(
    tmp_path: Path,
    make_mod: Callable[..., Path],
    make_soundpack: Callable[..., Path],
) -> tuple[Path, Path]:
    """A backup slot and a freshly extracted tree."""
    old, new = tmp_path / "cdda.phoenix_archive", tmp_path / "cdda"

    make_mod(old / "data" / "mods", "dda", "dda", payload="old")
    make_mod(old / "data" / "mods", "mine", "my_mod")
    (old / "data" / "mods" / "user-default-mods.json").write_text('["my_mod"]')
    make_soundpack(old / "data" / "sound", "CC", "CC-Sounds", {"custom/scream.ogg": b"aaa"})
    (old / "save" / "World").mkdir(parents=True)
    (old / "save" / "World" / "p.sav").write_bytes(b"save")
    (old / "memorial").mkdir()
    (old / "memorial" / "dead.txt").write_text("rip")
    (old / "config").mkdir()
    (old / "config" / "options.json").write_text("user")
    (old / "config" / "debug.log").write_text("noise")

    make_mod(new / "data" / "mods", "dda", "dda", payload="new")
    make_soundpack(new / "data" / "sound", "CC", "CC-Sounds")
    (new / "config").mkdir()
    (new / "config" / "options.json").write_text("default")
    (new / "save").mkdir()
    (new / "save" / "bundled.txt").write_text("from release")
    return old, new


async def _restore(
    old: Path, new: Path, config: AppConfig | None = None, progress: ProgressChannel | None = None
):
    config = config or AppConfig()
    migration_plan = await build_migration_plan(old, new, config)
    return await Restorer(config).restore(old, new, migration_plan, progress)


# =============================================================================
# Restorer Tests
# =============================================================================


class TestRestorer:
    """Tests for Restorer.restore."""

    @pytest.mark.asyncio
    async def test_restores_custom_content(self, trees: tuple[Path, Path]) -> None:
        """Test that custom items are copied and official ones kept."""
        old, new = trees
        progress = ProgressChannel()

        summary = await _restore(old, new, progress=progress)

        assert (new / "data" / "mods" / "mine" / "modinfo.json").exists()
        assert (new / "data" / "mods" / "dda" / "content.json").read_text() == "new"
        assert json.loads((new / "data" / "mods" / "user-default-mods.json").read_text()) == [
            "my_mod"
        ]
        assert (new / "data" / "sound" / "CC" / "custom" / "scream.ogg").read_bytes() == b"aaa"
        assert summary.merged_files == 1
        assert "mods:my_mod" in summary.copied

        record = progress.latest()
        assert record.phase is ProgressPhase.MIGRATE
        assert record.items_processed == record.total_items

    @pytest.mark.asyncio
    async def test_saves_replace_extracted_copy(self, trees: tuple[Path, Path]) -> None:
        """Test that save directories are carried wholesale."""
        old, new = trees

        summary = await _restore(old, new)

        assert (new / "save" / "World" / "p.sav").read_bytes() == b"save"
        assert not (new / "save" / "bundled.txt").exists()
        assert (new / "memorial" / "dead.txt").read_text() == "rip"
        assert sorted(summary.save_directories) == ["memorial", "save"]

    @pytest.mark.asyncio
    async def test_leave_saves_in_place(self, trees: tuple[Path, Path]) -> None:
        """Test that the save directory stays in the backup slot."""
        old, new = trees
        config = AppConfig(migration={"leave_saves_in_place": True})

        summary = await _restore(old, new, config)

        assert not (new / "save" / "World").exists()
        assert (old / "save" / "World" / "p.sav").read_bytes() == b"save"
        assert summary.save_directories == ["memorial"]

    @pytest.mark.asyncio
    async def test_saves_disabled(self, trees: tuple[Path, Path]) -> None:
        """Test that disabling saves copies no save directories."""
        old, new = trees
        summary = await _restore(old, new, AppConfig(migration={"saves": False}))

        assert summary.save_directories == []
        assert not (new / "memorial").exists()

    @pytest.mark.asyncio
    async def test_user_config_denylist(self, trees: tuple[Path, Path]) -> None:
        """Test that user config overrides defaults minus transient files."""
        old, new = trees

        summary = await _restore(old, new)

        assert (new / "config" / "options.json").read_text() == "user"
        assert not (new / "config" / "debug.log").exists()
        assert summary.config_restored is True
        assert summary.config_skipped == 1

    @pytest.mark.asyncio
    async def test_user_config_disabled(self, trees: tuple[Path, Path]) -> None:
        """Test that the config directory is left as released."""
        old, new = trees
        await _restore(old, new, AppConfig(migration={"user_config": False}))

        assert (new / "config" / "options.json").read_text() == "default"

    @pytest.mark.asyncio
    async def test_collision_is_skipped(self, trees: tuple[Path, Path]) -> None:
        """Test that an item already at the destination is skipped."""
        old, new = trees
        config = AppConfig()
        migration_plan = await build_migration_plan(old, new, config)
        # The release ships a different mod in the same folder
        (new / "data" / "mods" / "mine").mkdir()
        (new / "data" / "mods" / "mine" / "other.json").write_text("release")

        summary = await Restorer(config).restore(old, new, migration_plan)

        assert "mods:my_mod" in summary.skipped
        assert not (new / "data" / "mods" / "mine" / "modinfo.json").exists()

    @pytest.mark.asyncio
    async def test_disk_full(self, trees: tuple[Path, Path]) -> None:
        """Test that running out of space is DiskFullError at the migrate stage."""
        old, new = trees

        with patch(
            "phoenix_updater.updates.restorer.copy_item",
            side_effect=OSError(errno.ENOSPC, "No space left on device"),
        ):
            with pytest.raises(DiskFullError) as exc_info:
                await _restore(old, new)

        assert exc_info.value.stage == "migrate"
