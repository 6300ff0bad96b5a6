"""
Release asset download.

The payload is streamed into ``<name><temp_suffix>`` next to the final file
and only renamed to its final name once the stream completed and the size
check passed, so a partial download is never mistaken for a complete one.
A failed download leaves the temporary file in place for diagnosis; the next
attempt truncates it and starts from scratch. Retrying is the caller's job.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import httpx
from pydantic import BaseModel, Field, field_validator

from phoenix_updater.config import DownloadConfig
from phoenix_updater.errors import NetworkError, wrap_os_error
from phoenix_updater.logging import get_logger
from phoenix_updater.updates.operations import ensure_directory, run_in_worker
from phoenix_updater.updates.progress import ProgressChannel, ProgressPhase

logger = get_logger(__name__)


class ReleaseAsset(BaseModel):
    """
    A downloadable release package selected by the release-listing service.

    Attributes:
        url: Download locator.
        file_name: Expected file name of the asset.
        size: Optional expected size in bytes, checked after download.
        version: Version identifier installed by this asset.
    """

    model_config = {"frozen": True}

    url: str = Field(..., description="Download URL")
    file_name: str = Field(..., description="Asset file name")
    size: int | None = Field(default=None, ge=0, description="Expected size in bytes")
    version: str = Field(..., description="Target version identifier")

    @field_validator("file_name")
    @classmethod
    def validate_file_name(cls, v: str) -> str:
        """Reject names that would escape the downloads directory."""
        if not v or v in (".", "..") or "/" in v or "\\" in v:
            raise ValueError(f"Invalid asset file name: {v!r}")
        return v


@dataclass(frozen=True)
class DownloadResult:
    """Result of a successful download."""

    file_path: Path
    bytes: int
    elapsed_seconds: float


def _flush_to_disk(f: BinaryIO) -> None:
    f.flush()
    os.fsync(f.fileno())


def temp_path_for(destination: Path, temp_suffix: str = ".part") -> Path:
    """Path of the in-progress download for ``destination``."""
    return destination.with_name(destination.name + temp_suffix)


class Downloader:
    """
    Streams release assets to disk with throttled progress reporting.

    Attributes:
        config: Download configuration.
    """

    def __init__(
        self,
        config: DownloadConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the Downloader.

        Args:
            config: Download configuration.
            client: Optional shared HTTP client. When omitted a client is
                created for each download.
        """
        self.config = config or DownloadConfig()
        self._client = client

    def destination_for(self, asset: ReleaseAsset, directory: Path | None = None) -> Path:
        """Final path of a downloaded asset."""
        return (directory or self.config.directory) / asset.file_name

    async def download(
        self,
        asset: ReleaseAsset,
        directory: Path | None = None,
        progress: ProgressChannel | None = None,
    ) -> DownloadResult:
        """
        Download an asset to its final path.

        Args:
            asset: The asset to download.
            directory: Target directory (defaults to the configured one).
            progress: Optional channel receiving DOWNLOAD records.

        Returns:
            DownloadResult describing the completed file.

        Raises:
            NetworkError: On transport failure, HTTP error status, or size
                mismatch. The temporary file is left in place.
            IoError: If the file cannot be written.
            DiskFullError: If the disk fills up while writing.
        """
        destination = self.destination_for(asset, directory)
        temp_path = temp_path_for(destination, self.config.temp_suffix)
        ensure_directory(destination.parent)

        if progress is not None:
            progress.report(ProgressPhase.DOWNLOAD, total_bytes=asset.size or 0)

        logger.info(
            f"Downloading {asset.file_name}",
            extra={"url": asset.url, "destination": str(destination)},
        )

        start = time.monotonic()
        if self._client is not None:
            downloaded = await self._stream(self._client, asset, temp_path, progress)
        else:
            timeout = httpx.Timeout(self.config.timeout_seconds)
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                downloaded = await self._stream(client, asset, temp_path, progress)
        elapsed = time.monotonic() - start

        if asset.size is not None and downloaded != asset.size:
            raise NetworkError(
                f"Downloaded {downloaded} bytes, expected {asset.size}",
                details={
                    "url": asset.url,
                    "expected": asset.size,
                    "received": downloaded,
                    "temp_path": str(temp_path),
                },
            )

        try:
            os.replace(temp_path, destination)
        except OSError as e:
            raise wrap_os_error(
                e, "Failed to finalize download", details={"path": str(destination)}
            ) from e

        megabytes = downloaded / 1_000_000
        logger.info(
            f"Download complete: {megabytes:.1f} MB in {elapsed:.1f}s "
            f"({megabytes / max(elapsed, 1e-6):.1f} MB/s)",
            extra={"path": str(destination), "bytes": downloaded},
        )
        return DownloadResult(
            file_path=destination, bytes=downloaded, elapsed_seconds=elapsed
        )

    async def _stream(
        self,
        client: httpx.AsyncClient,
        asset: ReleaseAsset,
        temp_path: Path,
        progress: ProgressChannel | None,
    ) -> int:
        """Stream the response body into ``temp_path``; return bytes written."""
        interval = self.config.progress_interval_ms / 1000
        downloaded = 0

        try:
            async with client.stream("GET", asset.url) as response:
                response.raise_for_status()
                total = int(response.headers.get("Content-Length") or 0) or (
                    asset.size or 0
                )

                with open(temp_path, "wb") as f:
                    last_time = time.monotonic()
                    last_bytes = 0
                    async for chunk in response.aiter_bytes(self.config.chunk_size):
                        f.write(chunk)
                        downloaded += len(chunk)

                        now = time.monotonic()
                        elapsed = now - last_time
                        if progress is not None and elapsed >= interval:
                            progress.report(
                                ProgressPhase.DOWNLOAD,
                                bytes_downloaded=downloaded,
                                total_bytes=total,
                                speed=int((downloaded - last_bytes) / elapsed),
                            )
                            last_time = now
                            last_bytes = downloaded

                    await run_in_worker(_flush_to_disk, f)

                if progress is not None:
                    progress.report(
                        ProgressPhase.DOWNLOAD,
                        bytes_downloaded=downloaded,
                        total_bytes=max(total, downloaded),
                    )

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise NetworkError(
                f"Download failed with status {status} {e.response.reason_phrase}",
                details={"url": asset.url, "status": status},
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                f"Download interrupted after {downloaded} bytes: {e}",
                extra={"url": asset.url, "temp_path": str(temp_path)},
            )
            raise NetworkError(
                f"Download failed: {e}",
                details={
                    "url": asset.url,
                    "received": downloaded,
                    "temp_path": str(temp_path),
                },
            ) from e
        except OSError as e:
            raise wrap_os_error(
                e, "Failed to write download", details={"path": str(temp_path)}
            ) from e

        return downloaded
