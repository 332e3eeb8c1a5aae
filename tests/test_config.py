from pathlib import Path

from tello_link import constants
from tello_link.config import load_config, save_config


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "tello-link.cfg"
    config = load_config(config_path)

    assert config.path == config_path
    assert config.drone.host == "192.168.10.1"
    assert config.command_address == ("192.168.10.1", 8889)
    assert config.drone.telemetry_port == 8890
    assert config.drone.video_port == 11111
    assert config.commands.max_attempts == 3
    assert config.commands.retry_delay_seconds == 1.0
    assert config.commands.timeout_seconds == 5.0
    assert config.telemetry.min_interval_seconds == 0.1
    assert config.video.viewer_port == 3001
    assert config.video.width == 960
    assert config.video.bitrate == "800k"
    assert config.recording.codec == "libx264"
    assert config.media.root == constants.DEFAULT_MEDIA_ROOT
    assert config.health.enabled is True


def test_load_config_overrides_defaults(tmp_path: Path) -> None:
    config_file = tmp_path / "tello-link.cfg"
    config_file.write_text(
        """
[drone]
host = 10.0.0.5

[commands]
max_attempts = 5
timeout_seconds = 2.5

[video]
viewer_port = 4001
ffmpeg_path = /opt/ffmpeg/bin/ffmpeg

[media]
root = ~/Pictures/Tello

[logging]
level = DEBUG
path =
"""
    )

    config = load_config(config_file)

    assert config.drone.host == "10.0.0.5"
    assert config.commands.max_attempts == 5
    assert config.commands.timeout_seconds == 2.5
    assert config.video.viewer_port == 4001
    assert config.video.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"
    assert config.media.root == Path("~/Pictures/Tello").expanduser()
    assert config.logging.level == "DEBUG"
    assert config.logging.path is None


def test_load_config_clamps_invalid_values(tmp_path: Path) -> None:
    config_file = tmp_path / "tello-link.cfg"
    config_file.write_text(
        """
[commands]
max_attempts = 0
retry_delay_seconds = -1

[telemetry]
min_interval_seconds = fast

[media]
photo_poll_attempts = -3
"""
    )

    config = load_config(config_file)

    assert config.commands.max_attempts == 1
    assert config.commands.retry_delay_seconds == 0.0
    assert config.telemetry.min_interval_seconds == 0.1
    assert config.media.photo_poll_attempts == 1


def test_save_config_round_trips(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "tello-link.cfg"
    config = load_config(config_path)
    config.raw.set("drone", "host", "10.1.1.1")

    save_config(config)

    assert load_config(config_path).drone.host == "10.1.1.1"
