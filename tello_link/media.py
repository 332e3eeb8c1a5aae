"""Media folder layout and artifact naming."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .core.errors import MediaStorageError
from .core.models import MediaArtifact

LOGGER = logging.getLogger(__name__)

PHOTOS_DIRNAME = "photos"
RECORDINGS_DIRNAME = "recordings"
STILL_FILENAME = "live_still.jpg"


class MediaLibrary:
    """Stills and recordings under an externally supplied root directory.

    ``<root>/photos/tello_photo_<timestamp>.jpg``
    ``<root>/recordings/tello_video_<timestamp>.mp4``

    Timestamps carry microseconds; a numeric suffix is appended should a
    name still be taken.
    """

    def __init__(
        self,
        root: Path,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._root = root
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._issued: set[Path] = set()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def photos_dir(self) -> Path:
        return self._root / PHOTOS_DIRNAME

    @property
    def recordings_dir(self) -> Path:
        return self._root / RECORDINGS_DIRNAME

    @property
    def live_still_path(self) -> Path:
        """Scratch file the transcoder keeps overwriting with the latest frame."""
        return self._root / ".live" / STILL_FILENAME

    def initialize(self) -> None:
        """Create the folder layout and verify it is writable.

        Raises:
            MediaStorageError: A folder cannot be created or written.
        """

        for directory in (self._root, self.photos_dir, self.recordings_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise MediaStorageError(
                    f"Media folder error: {exc}. Check permissions for {self._root}"
                ) from exc

        probe = self.photos_dir / ".testwrite"
        try:
            probe.write_text("test", encoding="utf-8")
            probe.unlink()
        except OSError as exc:
            raise MediaStorageError(
                f"Media folder error: {exc}. Check permissions for {self._root}"
            ) from exc
        LOGGER.info("Media folders ready at %s", self._root)

    def new_photo(self) -> MediaArtifact:
        return MediaArtifact(kind="photo", path=self._reserve(self.photos_dir, "photo", ".jpg"))

    def new_recording(self) -> MediaArtifact:
        return MediaArtifact(
            kind="video", path=self._reserve(self.recordings_dir, "video", ".mp4")
        )

    def _reserve(self, directory: Path, kind: str, extension: str) -> Path:
        stamp = self._clock().strftime("%Y-%m-%dT%H-%M-%S-%f")
        candidate = directory / f"tello_{kind}_{stamp}{extension}"
        counter = 1
        while candidate.exists() or candidate in self._issued:
            candidate = directory / f"tello_{kind}_{stamp}_{counter}{extension}"
            counter += 1
        self._issued.add(candidate)
        return candidate
