"""Still capture from the transcoder's periodically refreshed frame file."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..core.errors import CaptureTimeout, FileIOFailure, PreconditionFailed
from .transcoder import StreamSupervisor

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PhotoResult:
    """Result of a photo capture."""

    path: Path
    size: int
    captured_at: datetime


class PhotoCapture:
    """Copies the live still frame to a destination once it is available.

    Staleness is bounded by the transcoder's still refresh interval.
    """

    def __init__(
        self,
        stream: StreamSupervisor,
        *,
        poll_attempts: int = 10,
        poll_interval: float = 0.2,
    ) -> None:
        self._stream = stream
        self._poll_attempts = max(1, poll_attempts)
        self._poll_interval = poll_interval

    async def capture(self, destination: Path) -> PhotoResult:
        """Copy the current still frame to ``destination``.

        Raises:
            PreconditionFailed: The stream is not live.
            CaptureTimeout: No non-empty frame appeared within the poll budget.
            FileIOFailure: The destination could not be written.
        """

        if not self._stream.is_live:
            raise PreconditionFailed("Photo capture requires a live video stream")

        source = self._stream.still_path
        size = await self._wait_for_frame(source)
        if size is None:
            raise CaptureTimeout(
                f"No still frame available after {self._poll_attempts} attempts"
            )

        try:
            size = await asyncio.to_thread(_copy_atomically, source, destination)
        except OSError as exc:
            raise FileIOFailure(f"Failed to save photo to {destination}: {exc}") from exc

        LOGGER.info("Photo captured: %s (%d bytes)", destination, size)
        return PhotoResult(
            path=destination, size=size, captured_at=datetime.now(timezone.utc)
        )

    async def _wait_for_frame(self, source: Path) -> Optional[int]:
        for attempt in range(1, self._poll_attempts + 1):
            size = _file_size(source)
            if size:
                return size
            LOGGER.debug(
                "Still frame not ready (attempt %d/%d)", attempt, self._poll_attempts
            )
            if attempt < self._poll_attempts:
                await asyncio.sleep(self._poll_interval)
        return None


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def _copy_atomically(source: Path, destination: Path) -> int:
    destination.parent.mkdir(parents=True, exist_ok=True)
    partial = destination.with_name(destination.name + ".part")
    try:
        shutil.copyfile(source, partial)
        size = partial.stat().st_size
        if size == 0:
            raise OSError("still frame was truncated while copying")
        os.replace(partial, destination)
    except OSError:
        partial.unlink(missing_ok=True)
        raise
    return size
