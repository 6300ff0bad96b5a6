"""
Configuration management for the Phoenix update engine.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (--config path or PHOENIX_UPDATER_CONFIG)
3. Environment variables (PHOENIX_UPDATER_* prefix, __ for nesting)
4. Explicit overrides (command-line arguments, highest precedence)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_ENV_PREFIX = "PHOENIX_UPDATER_"


def _default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "phoenix-updater"


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit JSON lines instead of plain text.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit structured JSON log lines",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Game Layout Configuration
# =============================================================================


class GameConfig(BaseModel):
    """Layout of a game installation.

    Attributes:
        executable_names: Executables checked for locks and running processes.
        save_directory: Name of the save directory inside the installation.
        mod_info: Mod manifest file name.
        tileset_info: Tileset manifest file name.
        soundpack_info: Soundpack manifest file name.
        disabled_suffix: Suffix appended to a disabled manifest.
        name_field: Field holding the identity in text manifests.
    """

    executable_names: list[str] = Field(
        default_factory=lambda: [
            "cataclysm-tiles.exe",
            "cataclysm.exe",
            "cataclysm-tiles",
            "cataclysm",
        ],
        description="Executables checked before the installation is touched",
    )
    save_directory: str = Field(
        default="save",
        description="Save directory name inside the installation",
    )
    mod_info: str = Field(default="modinfo.json", description="Mod manifest")
    tileset_info: str = Field(default="tileset.txt", description="Tileset manifest")
    soundpack_info: str = Field(
        default="soundpack.txt", description="Soundpack manifest"
    )
    disabled_suffix: str = Field(
        default=".disabled",
        description="Suffix of a manifest that has been disabled by the user",
    )
    name_field: str = Field(
        default="NAME",
        description="Field holding the identity in tileset/soundpack manifests",
    )


# =============================================================================
# Pipeline Stage Configuration
# =============================================================================


class DownloadConfig(BaseModel):
    """Download settings.

    Attributes:
        directory: Where release assets are downloaded.
        temp_suffix: Suffix of in-progress downloads.
        progress_interval_ms: Minimum time between progress updates.
        timeout_seconds: Network timeout for connect/read operations.
        chunk_size: Streaming chunk size in bytes.
    """

    directory: Path = Field(
        default_factory=lambda: _default_data_dir() / "downloads",
        description="Directory that receives downloaded release assets",
    )
    temp_suffix: str = Field(
        default=".part",
        description="Suffix of a download that has not completed",
    )
    progress_interval_ms: int = Field(
        default=100,
        ge=10,
        le=10_000,
        description="Minimum interval between download progress updates",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Network timeout in seconds",
    )
    chunk_size: int = Field(
        default=64 * 1024,
        ge=1024,
        description="Streaming chunk size in bytes",
    )

    @field_validator("temp_suffix")
    @classmethod
    def validate_temp_suffix(cls, v: str) -> str:
        """Require a leading dot so the suffix never merges into the name."""
        if not v.startswith(".") or len(v) < 2:
            raise ValueError(f"Invalid temp suffix: {v!r}. Must start with '.'")
        return v


class ArchiveConfig(BaseModel):
    """Backup slot naming.

    Slots are created next to the installation directory so that moving the
    tree is a same-volume rename.

    Attributes:
        backup_suffix: Suffix of the live backup slot.
        stale_marker: Marker of slots awaiting deletion.
    """

    backup_suffix: str = Field(
        default=".phoenix_archive",
        description="Suffix appended to the installation name for the backup slot",
    )
    stale_marker: str = Field(
        default=".phoenix_stale",
        description="Marker appended to backup slots scheduled for deletion",
    )


class ExtractConfig(BaseModel):
    """Extraction settings."""

    batch_size: int = Field(
        default=50,
        ge=1,
        description="Entries extracted between progress updates",
    )


class MigrationConfig(BaseModel):
    """Which user content survives an update and how.

    Attributes:
        mods: Carry forward custom mods.
        tilesets: Carry forward custom tilesets.
        soundpacks: Carry forward custom soundpacks.
        fonts: Carry forward custom fonts.
        saves: Carry forward saves and save-adjacent directories.
        user_config: Carry forward the user configuration directory.
        leave_saves_in_place: Leave the save directory in the backup slot.
        auto_delete_backup: Delete the stale slot in the background.
        save_directories: Directories copied wholesale with the saves category.
        config_directory: User configuration directory name.
        config_skip_files: Transient files never copied from user config.
        soundpack_content_extensions: Files merged into matching soundpacks.
        merge_soundpack_files: Merge custom files into official soundpacks.
    """

    mods: bool = Field(default=True, description="Migrate custom mods")
    tilesets: bool = Field(default=True, description="Migrate custom tilesets")
    soundpacks: bool = Field(default=True, description="Migrate custom soundpacks")
    fonts: bool = Field(default=True, description="Migrate custom fonts")
    saves: bool = Field(default=True, description="Migrate saves")
    user_config: bool = Field(default=True, description="Migrate user config")
    leave_saves_in_place: bool = Field(
        default=False,
        description="Do not move saves into the new installation",
    )
    auto_delete_backup: bool = Field(
        default=True,
        description="Delete the previous installation in the background on success",
    )
    save_directories: list[str] = Field(
        default_factory=lambda: ["save", "templates", "memorial", "graveyard"],
        description="Directories carried forward wholesale",
    )
    config_directory: str = Field(
        default="config",
        description="User configuration directory name",
    )
    config_skip_files: list[str] = Field(
        default_factory=lambda: ["debug.log", "debug.log.prev"],
        description="Files never copied from the user configuration directory",
    )
    soundpack_content_extensions: list[str] = Field(
        default_factory=lambda: ["ogg", "wav", "mp3", "flac", "json"],
        description="Extensions of soundpack files considered user content",
    )
    merge_soundpack_files: bool = Field(
        default=True,
        description="Copy custom files into soundpacks present in both versions",
    )

    @field_validator("soundpack_content_extensions")
    @classmethod
    def normalize_extensions(cls, v: list[str]) -> list[str]:
        """Store extensions lowercase and without the leading dot."""
        return [ext.lower().lstrip(".") for ext in v if ext.strip(". ")]


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        logging: Logging configuration.
        game: Game installation layout.
        download: Download settings.
        archive: Backup slot naming.
        extract: Extraction settings.
        migration: Content migration settings.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    game: GameConfig = Field(
        default_factory=GameConfig,
        description="Game installation layout",
    )
    download: DownloadConfig = Field(
        default_factory=DownloadConfig,
        description="Download settings",
    )
    archive: ArchiveConfig = Field(
        default_factory=ArchiveConfig,
        description="Backup slot naming",
    )
    extract: ExtractConfig = Field(
        default_factory=ExtractConfig,
        description="Extraction settings",
    )
    migration: MigrationConfig = Field(
        default_factory=MigrationConfig,
        description="Content migration settings",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Example: PHOENIX_UPDATER_MIGRATION__LEAVE_SAVES_IN_PLACE=true

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        config_key = key[len(prefix) :].lower()
        # PHOENIX_UPDATER_CONFIG names the file, it is not a setting
        if config_key == "config":
            continue

        parts = config_key.split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, the
            ``<prefix>CONFIG`` environment variable is consulted.
        env_prefix: Prefix for environment variables.
        overrides: Highest-precedence values, usually from the command line.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(overrides={"migration": {"fonts": False}})
        >>> config.migration.fonts
        False
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        env_path = os.environ.get(f"{env_prefix}CONFIG")
        if env_path:
            config_path = Path(env_path)
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)
