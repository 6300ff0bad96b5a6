"""
Filesystem operations shared by the update stages.

This module implements the primitive operations the pipeline is built from:
- Same-volume atomic renames (never a copy fallback)
- Safe directory creation and removal
- Non-overwriting copies of files and directory trees
- Blocking steps on worker threads that stop when the stage is cancelled

CRITICAL: moving an installation between the active path and a backup slot
must be a single ``os.rename``. A copy would leave data in two places if it
were interrupted, so a cross-volume move fails fast instead.
"""

from __future__ import annotations

import asyncio
import errno
import os
import shutil
import threading
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, TypeVar

from phoenix_updater.errors import IoError, wrap_os_error
from phoenix_updater.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Path to the directory.
        parents: If True, create parent directories as needed.
        mode: Directory permissions (default 0o755).

    Returns:
        The directory path.

    Raises:
        IoError: If directory cannot be created.
        DiskFullError: If the disk is full.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise wrap_os_error(
            e, f"Failed to create directory {path}", details={"path": str(path)}
        ) from e


def remove_path(path: Path) -> bool:
    """
    Remove a file, symlink or directory tree.

    Args:
        path: Path to remove.

    Returns:
        True if something was removed, False if nothing existed.

    Raises:
        OSError: If removal fails.
    """
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def same_volume(first: Path, second: Path) -> bool:
    """
    Check whether two paths live on the same filesystem.

    Paths that do not exist yet are compared through their nearest existing
    ancestor.
    """

    def _device(path: Path) -> int:
        existing = path
        while not existing.exists() and existing != existing.parent:
            existing = existing.parent
        return existing.stat().st_dev

    return _device(first) == _device(second)


def atomic_rename(source: Path, destination: Path) -> None:
    """
    Move a directory tree with a single rename.

    Args:
        source: Existing path to move.
        destination: Target path. Must not exist.

    Raises:
        IoError: If the destination exists, the paths are on different
            volumes, or the rename fails.
        BusyError: If the source is locked by another process.
        DiskFullError: If the filesystem reports no space left.
    """
    details = {"source": str(source), "destination": str(destination)}

    if destination.exists() or destination.is_symlink():
        raise IoError(
            f"Refusing to overwrite existing path: {destination}",
            details=details,
        )

    if not same_volume(source, destination.parent):
        raise IoError(
            f"{source} and {destination} are on different volumes; "
            "refusing to fall back to copying",
            details=details,
        )

    try:
        os.rename(source, destination)
    except OSError as e:
        if e.errno == errno.EXDEV:
            raise IoError(
                f"Cannot move {source} across volumes",
                details={**details, "error": str(e)},
            ) from e
        raise wrap_os_error(e, f"Failed to move {source}", details=details) from e

    logger.debug("Renamed directory", extra=details)


def copy_item(source: Path, destination: Path) -> bool:
    """
    Copy a file or directory tree without overwriting anything.

    Args:
        source: File or directory to copy.
        destination: Target path.

    Returns:
        True if copied, False if the destination already existed.

    Raises:
        OSError: If the copy fails.
    """
    if destination.exists() or destination.is_symlink():
        return False

    destination.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir() and not source.is_symlink():
        shutil.copytree(source, destination, symlinks=True)
    else:
        shutil.copy2(source, destination, follow_symlinks=False)
    return True


def copy_tree_filtered(
    source: Path,
    destination: Path,
    skip_names: Iterable[str] = (),
    *,
    cancel_event: threading.Event | None = None,
) -> int:
    """
    Copy the top-level entries of a directory, skipping names in a denylist.

    Args:
        source: Directory to copy from.
        destination: Directory to copy into (created if missing).
        skip_names: Top-level entry names never copied.
        cancel_event: When set, no further entries are copied.

    Returns:
        Number of top-level entries skipped.

    Raises:
        OSError: If a copy fails.
    """
    skip = set(skip_names)
    destination.mkdir(parents=True, exist_ok=True)

    skipped = 0
    for entry in source.iterdir():
        if cancel_event is not None and cancel_event.is_set():
            break
        if entry.name in skip:
            skipped += 1
            continue
        target = destination / entry.name
        if entry.is_dir() and not entry.is_symlink():
            shutil.copytree(entry, target, symlinks=True, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target, follow_symlinks=False)
    return skipped


async def run_in_worker(
    func: Callable[..., T],
    /,
    *args: Any,
    cancel_event: threading.Event | None = None,
    **kwargs: Any,
) -> T:
    """
    Run a blocking step on a worker thread, waiting for it even when cancelled.

    A cancelled caller is released only once the thread has returned: no file
    is written after CancelledError reaches it. When ``cancel_event`` is
    given it is passed to ``func`` as a keyword argument and set on
    cancellation; ``func`` must check it between units of work.

    Args:
        func: Blocking callable.
        *args: Positional arguments for ``func``.
        cancel_event: Optional stop flag handed to ``func``.
        **kwargs: Keyword arguments for ``func``.

    Returns:
        The result of ``func``.

    Raises:
        asyncio.CancelledError: After the worker has stopped, if the caller
            was cancelled.
    """
    if cancel_event is not None:
        kwargs["cancel_event"] = cancel_event
    worker = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))

    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError as cancelled:
        if cancel_event is not None:
            cancel_event.set()
        while not worker.done():
            try:
                await asyncio.wait({worker})
            except asyncio.CancelledError:
                continue
        if not worker.cancelled() and worker.exception() is not None:
            logger.debug(
                f"Cancelled worker stopped with an error: {worker.exception()}",
                extra={"step": getattr(func, "__name__", repr(func))},
            )
        raise cancelled
