"""
Tests for progress reporting.

Tests cover:
- ProgressRecord fractions per phase
- ProgressChannel latest-value semantics
- Change detection with read_if_changed
- Publishing from worker threads
"""

from __future__ import annotations

import threading

import pytest
from pydantic import ValidationError

from phoenix_updater.updates.progress import ProgressChannel, ProgressPhase, ProgressRecord

# =============================================================================
# ProgressRecord Tests
# =============================================================================


class TestProgressRecord:
    """Tests for ProgressRecord."""

    def test_defaults(self) -> None:
        """Test the idle record."""
        record = ProgressRecord()
        assert record.phase is ProgressPhase.IDLE
        assert record.fraction == 0.0

    def test_download_fraction(self) -> None:
        """Test byte-based completion."""
        record = ProgressRecord(
            phase=ProgressPhase.DOWNLOAD, bytes_downloaded=250, total_bytes=1000
        )
        assert record.fraction == 0.25

    def test_download_fraction_unknown_total(self) -> None:
        """Test completion without a known size."""
        assert ProgressRecord(phase=ProgressPhase.DOWNLOAD, bytes_downloaded=5).fraction == 0.0

    def test_item_fraction(self) -> None:
        """Test item-based completion is capped at 1."""
        record = ProgressRecord(phase=ProgressPhase.EXTRACT, items_processed=12, total_items=10)
        assert record.fraction == 1.0

    def test_complete_fraction(self) -> None:
        """Test that the complete phase is always 100%."""
        assert ProgressRecord(phase=ProgressPhase.COMPLETE).fraction == 1.0

    def test_negative_counts_rejected(self) -> None:
        """Test field validation."""
        with pytest.raises(ValidationError):
            ProgressRecord(bytes_downloaded=-1)

    def test_descriptions(self) -> None:
        """Test that every phase has a description."""
        for phase in ProgressPhase:
            assert phase.description()


# =============================================================================
# ProgressChannel Tests
# =============================================================================


class TestProgressChannel:
    """Tests for ProgressChannel."""

    def test_latest_value_wins(self) -> None:
        """Test that publishing overwrites the previous value."""
        channel = ProgressChannel()
        channel.report(ProgressPhase.DOWNLOAD, bytes_downloaded=1)
        channel.report(ProgressPhase.DOWNLOAD, bytes_downloaded=2)

        assert channel.latest().bytes_downloaded == 2
        assert channel.version == 2

    def test_read_if_changed(self) -> None:
        """Test change detection."""
        channel = ProgressChannel()
        version, record = channel.read_if_changed(0)
        assert record is None
        assert version == 0

        channel.report(ProgressPhase.BACKUP)
        version, record = channel.read_if_changed(version)
        assert record is not None
        assert record.phase is ProgressPhase.BACKUP

        version, record = channel.read_if_changed(version)
        assert record is None

    def test_publish_from_threads(self) -> None:
        """Test that concurrent publishers never lose the version count."""
        channel = ProgressChannel()

        def worker() -> None:
            for i in range(200):
                channel.report(ProgressPhase.EXTRACT, items_processed=i, total_items=200)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert channel.version == 800
        assert channel.latest().phase is ProgressPhase.EXTRACT
