"""
Pre-flight checks that the installation can be modified.

A migration must not start while the game is running or its files are held
open by another program: the rename of the installation tree would fail
halfway on some platforms, or succeed on others and pull the files out from
under the running game.
"""

from __future__ import annotations

import os
from pathlib import Path

import psutil
from pydantic import BaseModel, Field

from phoenix_updater.errors import BusyError, IoError
from phoenix_updater.logging import get_logger

logger = get_logger(__name__)

WRITE_TEST_NAME = ".phoenix_write_test"


class InstallationInfo(BaseModel):
    """
    Installation as reported by the installation-detection collaborator.

    Attributes:
        root: Installation directory.
        process_running: Whether the game is currently running from it.
    """

    root: Path = Field(..., description="Installation directory")
    process_running: bool = Field(
        default=False,
        description="Whether a game process is running from the installation",
    )


def find_running_processes(root: Path, executable_names: list[str]) -> list[int]:
    """
    Find processes whose executable lives inside ``root``.

    Args:
        root: Installation directory.
        executable_names: Game executable names.

    Returns:
        PIDs of matching processes.
    """
    resolved_root = root.resolve()
    names = {name.lower() for name in executable_names}
    pids: list[int] = []

    for proc in psutil.process_iter(["pid", "name", "exe"]):
        try:
            info = proc.info
            name = (info.get("name") or "").lower()
            if name not in names:
                continue
            exe = info.get("exe")
            if not exe:
                continue
            exe_path = Path(exe).resolve()
            if resolved_root in exe_path.parents:
                pids.append(info["pid"])
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        except OSError:
            continue

    return pids


def detect_installation(root: Path | str, executable_names: list[str]) -> InstallationInfo:
    """Build an InstallationInfo for ``root`` using a process scan."""
    root = Path(root)
    pids = find_running_processes(root, executable_names)
    if pids:
        logger.info(
            "Game process running from installation",
            extra={"path": str(root), "pids": pids},
        )
    return InstallationInfo(root=root, process_running=bool(pids))


def check_installation_access(
    installation: InstallationInfo,
    executable_names: list[str],
) -> None:
    """
    Verify the installation can be modified.

    Args:
        installation: The installation to check.
        executable_names: Executables checked for write access.

    Raises:
        IoError: If the installation directory does not exist.
        BusyError: If the game is running, an executable is locked, or the
            directory is not writable.
    """
    root = installation.root

    if not root.is_dir():
        raise IoError(
            f"Installation directory not found: {root}",
            details={"path": str(root)},
        )

    if installation.process_running:
        raise BusyError(
            "The game is running. Please close it before updating.",
            details={"path": str(root)},
        )

    for name in executable_names:
        exe_path = root / name
        if not exe_path.exists():
            continue
        try:
            # Fails with a sharing violation on Windows while the file is in use
            with open(exe_path, "r+b"):
                pass
        except OSError as e:
            raise BusyError(
                f"Cannot update: {name} is locked. "
                "The file may be in use by another program.",
                details={"path": str(exe_path), "error": str(e)},
            ) from e
        logger.debug(f"Access check passed for {name}")

    test_file = root / WRITE_TEST_NAME
    try:
        test_file.write_bytes(b"test")
        os.remove(test_file)
    except OSError as e:
        raise BusyError(
            "Cannot write to the game directory. Please check folder permissions.",
            details={"path": str(root), "error": str(e)},
        ) from e
