"""
Progress reporting for a running migration.

The engine publishes ProgressRecord values into a single-slot ProgressChannel
and an observer reads the most recent value at its own cadence. Publishing
never blocks on the observer and old values are simply overwritten, so a slow
UI can never stall the engine or grow a queue.
"""

from __future__ import annotations

import threading
from enum import Enum

from pydantic import BaseModel, Field


class ProgressPhase(str, Enum):
    """Phases of a migration, in execution order."""

    IDLE = "idle"
    DOWNLOAD = "download"
    BACKUP = "backup"
    EXTRACT = "extract"
    MIGRATE = "migrate"
    CLEANUP = "cleanup"
    COMPLETE = "complete"
    FAILED = "failed"

    def description(self) -> str:
        """Human-readable description of the phase."""
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    ProgressPhase.IDLE: "Ready",
    ProgressPhase.DOWNLOAD: "Downloading update...",
    ProgressPhase.BACKUP: "Backing up current installation...",
    ProgressPhase.EXTRACT: "Extracting new version...",
    ProgressPhase.MIGRATE: "Restoring saves and custom content...",
    ProgressPhase.CLEANUP: "Cleaning up...",
    ProgressPhase.COMPLETE: "Update complete!",
    ProgressPhase.FAILED: "Update failed",
}


class ProgressRecord(BaseModel):
    """
    Snapshot of migration progress.

    Download records fill the byte counters and transfer rate; extract and
    migrate records fill the item counters and current file name.
    """

    model_config = {"frozen": True}

    phase: ProgressPhase = Field(
        default=ProgressPhase.IDLE,
        description="Current phase",
    )
    bytes_downloaded: int = Field(default=0, ge=0, description="Bytes transferred")
    total_bytes: int = Field(default=0, ge=0, description="Expected download size")
    speed: int = Field(default=0, ge=0, description="Transfer rate in bytes/second")
    items_processed: int = Field(default=0, ge=0, description="Entries handled")
    total_items: int = Field(default=0, ge=0, description="Entries in this phase")
    current_file: str = Field(default="", description="Entry being processed")

    @property
    def fraction(self) -> float:
        """Completion of the current phase in the range 0.0 - 1.0."""
        if self.phase is ProgressPhase.COMPLETE:
            return 1.0
        if self.phase is ProgressPhase.DOWNLOAD:
            if self.total_bytes == 0:
                return 0.0
            return min(self.bytes_downloaded / self.total_bytes, 1.0)
        if self.total_items == 0:
            return 0.0
        return min(self.items_processed / self.total_items, 1.0)


class ProgressChannel:
    """
    Single-slot, thread-safe holder of the latest ProgressRecord.

    The engine writes from the event loop and from worker threads (archive
    extraction, bulk copies); observers poll ``latest()`` or compare
    ``version`` to detect new values.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._record = ProgressRecord()
        self._version = 0

    def publish(self, record: ProgressRecord) -> None:
        """Replace the current value. Never blocks on readers."""
        with self._lock:
            self._record = record
            self._version += 1

    def report(self, phase: ProgressPhase, **fields: object) -> None:
        """Publish a new record for ``phase`` built from ``fields``."""
        self.publish(ProgressRecord(phase=phase, **fields))

    def latest(self) -> ProgressRecord:
        """Return the most recently published record."""
        with self._lock:
            return self._record

    @property
    def version(self) -> int:
        """Number of records published so far."""
        with self._lock:
            return self._version

    def read_if_changed(self, seen_version: int) -> tuple[int, ProgressRecord | None]:
        """
        Return the latest record if it is newer than ``seen_version``.

        Returns:
            ``(version, record)`` where record is None when nothing changed.
        """
        with self._lock:
            if self._version == seen_version:
                return seen_version, None
            return self._version, self._record
