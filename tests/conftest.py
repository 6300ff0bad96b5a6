"""
Pytest configuration and shared fixtures for the Phoenix updater tests.
"""

from __future__ import annotations

import io
import json
import zipfile
from collections.abc import Callable
from pathlib import Path

import pytest

from phoenix_updater.config import AppConfig

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Content builders
# =============================================================================


def _write(path: Path, data: bytes | str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, str):
        path.write_text(data)
    else:
        path.write_bytes(data)
    return path


@pytest.fixture
def make_mod() -> Callable[..., Path]:
    """Factory creating a mod directory with a modinfo.json."""

    def _make(root: Path, dirname: str, mod_id: str, payload: str = "") -> Path:
        mod_dir = root / dirname
        _write(
            mod_dir / "modinfo.json",
            json.dumps([{"type": "MOD_INFO", "id": mod_id, "name": mod_id.title()}]),
        )
        _write(mod_dir / "content.json", payload or f"[{json.dumps(mod_id)}]")
        return mod_dir

    return _make


@pytest.fixture
def make_tileset() -> Callable[..., Path]:
    """Factory creating a tileset directory with a tileset.txt."""

    def _make(root: Path, dirname: str, name: str) -> Path:
        tileset_dir = root / dirname
        _write(tileset_dir / "tileset.txt", f"#Tileset\nNAME {name}\nVIEW {name}\n")
        _write(tileset_dir / "tiles.png", b"\x89PNG" + name.encode())
        return tileset_dir

    return _make


@pytest.fixture
def make_soundpack() -> Callable[..., Path]:
    """Factory creating a soundpack directory with a soundpack.txt."""

    def _make(root: Path, dirname: str, name: str, files: dict[str, bytes] | None = None) -> Path:
        pack_dir = root / dirname
        _write(pack_dir / "soundpack.txt", f"NAME {name}\nVIEW {name}\n")
        for relative, data in (files or {}).items():
            _write(pack_dir / relative, data)
        return pack_dir

    return _make


def tree_contents(root: Path) -> dict[str, bytes | None]:
    """Map of relative path to file bytes (None for directories)."""
    contents: dict[str, bytes | None] = {}
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root).as_posix()
        contents[relative] = path.read_bytes() if path.is_file() else None
    return contents


@pytest.fixture
def snapshot_tree() -> Callable[[Path], dict[str, bytes | None]]:
    """Return a function capturing a tree's relative paths and bytes."""
    return tree_contents


def build_zip(entries: dict[str, bytes | str]) -> bytes:
    """Build an in-memory ZIP archive from a mapping of name to content."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def zip_bytes() -> Callable[[dict[str, bytes | str]], bytes]:
    """Return a function building ZIP archives in memory."""
    return build_zip


# =============================================================================
# Installation fixtures
# =============================================================================


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration with downloads kept inside the test directory."""
    return AppConfig(download={"directory": tmp_path / "downloads", "progress_interval_ms": 10})


@pytest.fixture
def install_dir(
    tmp_path: Path,
    make_mod: Callable[..., Path],
    make_tileset: Callable[..., Path],
) -> Path:
    """
    A previous installation with official and user content.

    Layout:
        data/mods/{dda (official), aftershock (official), user_mod (custom)}
        gfx/{Official (official), MyTiles (custom)}
        font/{terminus.ttf (official), custom.ttf (custom)}
        save/World/player.sav, templates/hero.template
        config/{options.json, debug.log}
    """
    root = tmp_path / "games" / "cdda"
    mods = root / "data" / "mods"
    make_mod(mods, "dda", "dda", payload="old dda")
    make_mod(mods, "aftershock", "aftershock", payload="old aftershock")
    make_mod(mods, "user_mod", "user_mod")
    _write(mods / "user-default-mods.json", '["dda", "user_mod"]')

    make_tileset(root / "gfx", "Official", "Official")
    make_tileset(root / "gfx", "MyTiles", "MyTiles")

    _write(root / "font" / "terminus.ttf", b"official font")
    _write(root / "font" / "custom.ttf", b"custom font")

    _write(root / "save" / "World" / "player.sav", b"player save data")
    _write(root / "templates" / "hero.template", b"template")
    _write(root / "config" / "options.json", '{"VOLUME": 80}')
    _write(root / "config" / "debug.log", "noise")

    _write(root / "cataclysm-tiles", b"old binary")
    return root


@pytest.fixture
def release_entries() -> dict[str, bytes | str]:
    """Entries of the next release: updated dda, new magiclysm, no saves."""
    return {
        "cataclysm-tiles": b"new binary",
        "data/mods/dda/modinfo.json": json.dumps(
            [{"type": "MOD_INFO", "id": "dda", "name": "Dark Days Ahead"}]
        ),
        "data/mods/dda/content.json": "new dda",
        "data/mods/magiclysm/modinfo.json": json.dumps(
            {"type": "MOD_INFO", "id": "magiclysm", "name": "Magiclysm"}
        ),
        "gfx/Official/tileset.txt": "NAME Official\n",
        "font/terminus.ttf": b"official font",
        "config/options.json": '{"VOLUME": 100}',
    }
