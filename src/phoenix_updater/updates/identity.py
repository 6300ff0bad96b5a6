"""
Content identity for customizable game content.

A ContentIdentity is the stable logical key of a mod, tileset, soundpack or
font. Two items carry the same identity when they represent the same content,
even if their bytes differ between game versions, so an updated official mod
is never mistaken for a user addition.

Identity rules:
- mods: the ``id`` of the first ``MOD_INFO`` object in ``modinfo.json``
- tilesets / soundpacks: the ``NAME`` line of ``tileset.txt`` / ``soundpack.txt``
- fonts: the item's path relative to the font root
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath

from phoenix_updater.config import GameConfig
from phoenix_updater.logging import get_logger

logger = get_logger(__name__)


class ContentCategory(str, Enum):
    """Categories of user-customizable content."""

    MODS = "mods"
    TILESETS = "tilesets"
    SOUNDPACKS = "soundpacks"
    FONTS = "fonts"
    SAVES = "saves"
    USER_CONFIG = "user_config"


class IdentityRule(str, Enum):
    """How an identity is computed for items under a category root."""

    MOD_MANIFEST = "mod_manifest"
    TILESET_MANIFEST = "tileset_manifest"
    SOUNDPACK_MANIFEST = "soundpack_manifest"
    RELATIVE_PATH = "relative_path"


@dataclass(frozen=True, order=True)
class ContentIdentity:
    """Stable, comparable key of one piece of content."""

    category: ContentCategory
    key: str

    def __str__(self) -> str:
        return f"{self.category.value}:{self.key}"


@dataclass(frozen=True)
class CategoryRoot:
    """
    A directory inside the installation holding one category's items.

    Attributes:
        category: Content category of the items.
        relative_root: Root path relative to the installation directory.
        rule: Identity extraction rule for items found under the root.
    """

    category: ContentCategory
    relative_root: PurePosixPath
    rule: IdentityRule

    @property
    def label(self) -> str:
        """Human-readable name used in logs."""
        return f"{self.category.value} ({self.relative_root})"

    def resolve(self, tree: Path) -> Path:
        """Return the absolute root inside ``tree``."""
        return tree.joinpath(*self.relative_root.parts)


# Per-identity category roots. Saves and user config are whole-directory
# categories and are handled by the restorer directly.
CATEGORY_ROOTS: tuple[CategoryRoot, ...] = (
    CategoryRoot(ContentCategory.MODS, PurePosixPath("data/mods"), IdentityRule.MOD_MANIFEST),
    CategoryRoot(ContentCategory.MODS, PurePosixPath("mods"), IdentityRule.MOD_MANIFEST),
    CategoryRoot(ContentCategory.TILESETS, PurePosixPath("gfx"), IdentityRule.TILESET_MANIFEST),
    CategoryRoot(
        ContentCategory.SOUNDPACKS, PurePosixPath("data/sound"), IdentityRule.SOUNDPACK_MANIFEST
    ),
    CategoryRoot(ContentCategory.FONTS, PurePosixPath("font"), IdentityRule.RELATIVE_PATH),
    CategoryRoot(ContentCategory.FONTS, PurePosixPath("data/font"), IdentityRule.RELATIVE_PATH),
)


def _manifest_path(item_dir: Path, filename: str, disabled_suffix: str) -> Path | None:
    """Return the active manifest, falling back to its disabled variant."""
    for candidate in (item_dir / filename, item_dir / f"{filename}{disabled_suffix}"):
        if candidate.is_file():
            return candidate
    return None


def parse_mod_ident(mod_dir: Path, game: GameConfig | None = None) -> str | None:
    """
    Extract a mod identifier from its ``modinfo.json``.

    Both layouts used by mods are accepted: a single ``MOD_INFO`` object, or
    an array in which the first ``MOD_INFO`` object wins.

    Args:
        mod_dir: The mod's directory.
        game: Game layout configuration (manifest names).

    Returns:
        The mod id, or None if the directory holds no readable manifest.
    """
    game = game or GameConfig()
    manifest = _manifest_path(mod_dir, game.mod_info, game.disabled_suffix)
    if manifest is None:
        return None

    try:
        data = json.loads(manifest.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as e:
        logger.debug(
            "Unreadable mod manifest",
            extra={"path": str(manifest), "error": str(e)},
        )
        return None

    candidates = data if isinstance(data, list) else [data]
    for obj in candidates:
        if not isinstance(obj, dict) or obj.get("type") != "MOD_INFO":
            continue
        mod_id = obj.get("id")
        if isinstance(mod_id, str) and mod_id:
            return mod_id
    return None


def parse_asset_name(
    asset_dir: Path,
    filename: str,
    game: GameConfig | None = None,
) -> str | None:
    """
    Extract the ``NAME`` field from a tileset or soundpack manifest.

    The manifest format is ``NAME <name>``; everything after the first space
    is the name, with commas removed. Manifests are decoded leniently since
    older packs are often latin-1.

    Args:
        asset_dir: The tileset or soundpack directory.
        filename: Manifest file name (``tileset.txt`` or ``soundpack.txt``).
        game: Game layout configuration.

    Returns:
        The asset name, or None if missing.
    """
    game = game or GameConfig()
    manifest = _manifest_path(asset_dir, filename, game.disabled_suffix)
    if manifest is None:
        return None

    try:
        text = manifest.read_bytes().decode("utf-8", errors="replace")
    except OSError as e:
        logger.debug(
            "Unreadable asset manifest",
            extra={"path": str(manifest), "error": str(e)},
        )
        return None

    for line in text.splitlines():
        if not line.startswith(game.name_field):
            continue
        _, sep, rest = line.partition(" ")
        if not sep:
            continue
        name = rest.strip().replace(",", "")
        if name:
            return name
    return None


def file_digest(path: Path) -> str:
    """
    Compute a SHA-256 digest of a file or directory.

    Directories hash their relative file paths and contents in sorted order,
    so the digest is independent of the tree's location.
    """
    digest = hashlib.sha256()
    if path.is_dir():
        for child in sorted(p for p in path.rglob("*") if p.is_file()):
            digest.update(child.relative_to(path).as_posix().encode("utf-8"))
            digest.update(child.read_bytes())
    else:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(chunk)
    return digest.hexdigest()


def identify(
    root: CategoryRoot,
    item: Path,
    game: GameConfig | None = None,
) -> ContentIdentity | None:
    """
    Compute the identity of one item found directly under a category root.

    Args:
        root: The category root the item was found under.
        item: Path to the item.
        game: Game layout configuration.

    Returns:
        The item's identity, or None if the item is not content of the
        category (e.g. a loose file in the mods directory).
    """
    game = game or GameConfig()

    if root.rule is IdentityRule.RELATIVE_PATH:
        return ContentIdentity(root.category, item.name)

    if not item.is_dir():
        return None

    key: str | None
    if root.rule is IdentityRule.MOD_MANIFEST:
        key = parse_mod_ident(item, game)
    elif root.rule is IdentityRule.TILESET_MANIFEST:
        key = parse_asset_name(item, game.tileset_info, game)
    else:
        key = parse_asset_name(item, game.soundpack_info, game)

    if key is None:
        return None
    return ContentIdentity(root.category, key)
