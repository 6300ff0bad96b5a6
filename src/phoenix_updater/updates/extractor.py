"""
Release archive extraction.

ZIP and tar archives are unpacked into the vacant installation directory,
preserving relative paths. Every entry is validated before anything is
written: absolute paths, ``..`` components, drive letters and links that
would land outside the destination are rejected as MalformedArchiveError.

Decompression is CPU bound and runs on a worker thread so progress updates
stay observable while a large archive is unpacked.
"""

from __future__ import annotations

import os
import re
import shutil
import stat
import tarfile
import threading
import zipfile
from pathlib import Path, PurePosixPath

from phoenix_updater.errors import MalformedArchiveError, wrap_os_error
from phoenix_updater.logging import get_logger
from phoenix_updater.updates.operations import run_in_worker
from phoenix_updater.updates.progress import ProgressChannel, ProgressPhase

logger = get_logger(__name__)

_DRIVE_PATTERN = re.compile(r"^[A-Za-z]:")
_TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tar.xz")


def safe_member_path(name: str, destination: Path) -> Path:
    """
    Resolve an archive entry name inside ``destination``.

    Args:
        name: Entry name as stored in the archive.
        destination: Extraction root.

    Returns:
        The absolute target path of the entry.

    Raises:
        MalformedArchiveError: If the entry would resolve outside
            ``destination``.
    """
    normalized = name.replace("\\", "/")
    pure = PurePosixPath(normalized)
    parts = [part for part in pure.parts if part not in ("", ".")]

    if (
        normalized.startswith("/")
        or pure.is_absolute()
        or ".." in parts
        or (parts and _DRIVE_PATTERN.match(parts[0]))
    ):
        raise MalformedArchiveError(
            f"Unsafe archive entry path: {name}",
            details={"entry": name},
        )

    root = destination.resolve()
    target = root.joinpath(*parts).resolve() if parts else root
    if target != root and root not in target.parents:
        raise MalformedArchiveError(
            f"Archive entry escapes the installation directory: {name}",
            details={"entry": name},
        )
    return target


def is_tar_archive(path: Path) -> bool:
    """Whether ``path`` names a tar archive (by suffix)."""
    return path.name.lower().endswith(_TAR_SUFFIXES)


def _stopped(cancel_event: threading.Event | None, index: int, total: int) -> bool:
    if cancel_event is None or not cancel_event.is_set():
        return False
    logger.info(f"Extraction stopped after {index} of {total} entries")
    return True


class _ProgressTicker:
    """Publishes EXTRACT records every ``batch_size`` entries."""

    def __init__(self, progress: ProgressChannel | None, total: int, batch_size: int) -> None:
        self._progress = progress
        self._total = total
        self._batch = max(batch_size, 1)
        if progress is not None:
            progress.report(ProgressPhase.EXTRACT, total_items=total)

    def tick(self, index: int, name: str) -> None:
        if self._progress is None:
            return
        if index % self._batch == 0 or index == self._total - 1:
            self._progress.report(
                ProgressPhase.EXTRACT,
                items_processed=index + 1,
                total_items=self._total,
                current_file=name,
            )


def _extract_zip(
    archive_path: Path,
    destination: Path,
    progress: ProgressChannel | None,
    batch_size: int,
    cancel_event: threading.Event | None = None,
) -> int:
    try:
        archive = zipfile.ZipFile(archive_path)
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        raise MalformedArchiveError(
            f"Not a valid ZIP archive: {e}",
            details={"archive": str(archive_path)},
        ) from e

    with archive:
        entries = archive.infolist()
        targets = []
        for entry in entries:
            if stat.S_ISLNK(entry.external_attr >> 16):
                raise MalformedArchiveError(
                    f"ZIP archive contains a symlink entry: {entry.filename}",
                    details={"entry": entry.filename},
                )
            targets.append(safe_member_path(entry.filename, destination))

        ticker = _ProgressTicker(progress, len(entries), batch_size)
        for index, (entry, target) in enumerate(zip(entries, targets)):
            if _stopped(cancel_event, index, len(entries)):
                return index
            try:
                if entry.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with archive.open(entry) as source, open(target, "wb") as sink:
                        shutil.copyfileobj(source, sink)
            except (zipfile.BadZipFile, EOFError) as e:
                raise MalformedArchiveError(
                    f"Corrupt ZIP entry {entry.filename}: {e}",
                    details={"entry": entry.filename},
                ) from e
            ticker.tick(index, entry.filename)

    return len(entries)


def _extract_tar(
    archive_path: Path,
    destination: Path,
    progress: ProgressChannel | None,
    batch_size: int,
    cancel_event: threading.Event | None = None,
) -> int:
    try:
        archive = tarfile.open(archive_path)
    except tarfile.TarError as e:
        raise MalformedArchiveError(
            f"Not a valid tar archive: {e}",
            details={"archive": str(archive_path)},
        ) from e

    with archive:
        try:
            members = archive.getmembers()
        except (tarfile.TarError, EOFError) as e:
            raise MalformedArchiveError(
                f"Corrupt tar archive: {e}",
                details={"archive": str(archive_path)},
            ) from e

        targets = []
        for member in members:
            target = safe_member_path(member.name, destination)
            if member.issym():
                safe_member_path(
                    str(PurePosixPath(member.name).parent / member.linkname), destination
                )
            elif member.islnk():
                safe_member_path(member.linkname, destination)
            elif not (member.isfile() or member.isdir()):
                raise MalformedArchiveError(
                    f"Unsupported tar entry type: {member.name}",
                    details={"entry": member.name},
                )
            targets.append(target)

        ticker = _ProgressTicker(progress, len(members), batch_size)
        for index, (member, target) in enumerate(zip(members, targets)):
            if _stopped(cancel_event, index, len(members)):
                return index
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.issym():
                target.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(member.linkname, target)
            elif member.islnk():
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(safe_member_path(member.linkname, destination), target)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                source = archive.extractfile(member)
                if source is None:
                    raise MalformedArchiveError(
                        f"Unreadable tar entry: {member.name}",
                        details={"entry": member.name},
                    )
                with source, open(target, "wb") as sink:
                    shutil.copyfileobj(source, sink)
                os.chmod(target, member.mode & 0o777 or 0o644)
            ticker.tick(index, member.name)

    return len(members)


def extract_archive(
    archive_path: Path,
    destination: Path,
    progress: ProgressChannel | None = None,
    batch_size: int = 50,
    *,
    cancel_event: threading.Event | None = None,
) -> int:
    """
    Extract an archive into ``destination`` (blocking).

    Args:
        archive_path: ZIP or tar archive to extract.
        destination: Extraction root; created if missing.
        progress: Optional channel receiving EXTRACT records.
        batch_size: Entries between progress updates.
        cancel_event: Checked before each entry; once set, extraction stops
            and the entries written so far are left in place.

    Returns:
        Number of archive entries processed.

    Raises:
        MalformedArchiveError: If the archive is invalid or unsafe.
        IoError: If writing fails.
        DiskFullError: If the disk fills up.
    """
    try:
        destination.mkdir(parents=True, exist_ok=True)
        if is_tar_archive(archive_path):
            return _extract_tar(
                archive_path, destination, progress, batch_size, cancel_event
            )
        return _extract_zip(archive_path, destination, progress, batch_size, cancel_event)
    except OSError as e:
        raise wrap_os_error(
            e,
            "Failed to extract archive",
            details={"archive": str(archive_path), "destination": str(destination)},
        ) from e


async def extract(
    archive_path: Path,
    destination: Path,
    progress: ProgressChannel | None = None,
    batch_size: int = 50,
) -> int:
    """
    Extract an archive on a worker thread. See ``extract_archive``.

    If the calling task is cancelled, the worker stops before its next entry
    and this coroutine raises CancelledError only after it has returned.
    """
    return await run_in_worker(
        extract_archive,
        archive_path,
        destination,
        progress,
        batch_size,
        cancel_event=threading.Event(),
    )


def verify_extraction(install_dir: Path, executable_names: list[str]) -> bool:
    """
    Check that the new tree contains a game executable.

    A missing executable is logged, not raised: some releases ship launchers
    under different names.
    """
    found = any((install_dir / name).exists() for name in executable_names)
    if not found:
        logger.warning(
            "Game executable not found after extraction",
            extra={"path": str(install_dir), "expected": executable_names},
        )
    return found
