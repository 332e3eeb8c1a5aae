import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from tello_link.core.errors import FileIOFailure, MediaStorageError
from tello_link.media import MediaLibrary

FIXED = datetime(2024, 5, 1, 12, 30, 15, 123456, tzinfo=timezone.utc)


def test_initialize_creates_layout(tmp_path: Path):
    library = MediaLibrary(tmp_path / "TelloMedia")

    library.initialize()

    assert library.photos_dir.is_dir()
    assert library.recordings_dir.is_dir()
    assert not (library.photos_dir / ".testwrite").exists()


def test_artifact_names_are_timestamped(tmp_path: Path):
    library = MediaLibrary(tmp_path, clock=lambda: FIXED)

    photo = library.new_photo()
    video = library.new_recording()

    assert photo.kind == "photo"
    assert photo.path == tmp_path / "photos" / "tello_photo_2024-05-01T12-30-15-123456.jpg"
    assert video.kind == "video"
    assert video.path == tmp_path / "recordings" / "tello_video_2024-05-01T12-30-15-123456.mp4"


def test_names_never_collide(tmp_path: Path):
    library = MediaLibrary(tmp_path, clock=lambda: FIXED)
    library.initialize()
    existing = library.new_photo().path
    existing.write_bytes(b"jpeg")

    reissued = MediaLibrary(tmp_path, clock=lambda: FIXED).new_photo().path
    second = library.new_photo().path
    third = library.new_photo().path

    assert reissued.name.endswith("_1.jpg")
    assert len({existing, second, third}) == 3


@pytest.mark.skipif(os.name == "nt" or os.geteuid() == 0, reason="needs POSIX permissions")
def test_unwritable_root_raises_storage_error(tmp_path: Path):
    root = tmp_path / "locked"
    root.mkdir()
    root.chmod(0o500)
    try:
        with pytest.raises(MediaStorageError) as excinfo:
            MediaLibrary(root).initialize()
    finally:
        root.chmod(0o700)

    assert isinstance(excinfo.value, FileIOFailure)
    assert excinfo.value.code == "media_storage_error"
