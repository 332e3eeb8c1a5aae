"""Configuration loader for tello-link."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class DroneConfig:
    host: str = constants.DEFAULT_DRONE_HOST
    command_port: int = constants.DEFAULT_COMMAND_PORT
    telemetry_port: int = constants.DEFAULT_TELEMETRY_PORT
    video_port: int = constants.DEFAULT_VIDEO_PORT


@dataclass(slots=True)
class CommandConfig:
    max_attempts: int = 3
    retry_delay_seconds: float = 1.0
    timeout_seconds: float = 5.0
    maneuver_timeout_seconds: float = 20.0  # Device acks maneuvers only once they finish


@dataclass(slots=True)
class TelemetryConfig:
    min_interval_seconds: float = 0.1
    link_timeout_seconds: float = 5.0


@dataclass(slots=True)
class VideoConfig:
    ffmpeg_path: str = constants.DEFAULT_FFMPEG_PATH
    viewer_host: str = constants.DEFAULT_VIEWER_HOST
    viewer_port: int = constants.DEFAULT_VIEWER_PORT
    width: int = 960
    height: int = 720
    bitrate: str = "800k"
    framerate: int = 30
    still_fps: float = 1.0
    stop_grace_seconds: float = 3.0
    port_reclaim_attempts: int = 3
    port_reclaim_backoff_seconds: float = 0.5
    pipe_buffer_limit: int = 1024 * 1024
    viewer_buffer_limit: int = 512 * 1024


@dataclass(slots=True)
class RecordingConfig:
    codec: str = "libx264"
    preset: str = "veryfast"
    crf: int = 23
    gop: int = 30
    stop_grace_seconds: float = 5.0


@dataclass(slots=True)
class MediaConfig:
    root: Path = constants.DEFAULT_MEDIA_ROOT
    photo_poll_attempts: int = 10
    photo_poll_interval_seconds: float = 0.2


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = True


@dataclass(slots=True)
class LinkConfig:
    drone: DroneConfig
    commands: CommandConfig
    telemetry: TelemetryConfig
    video: VideoConfig
    recording: RecordingConfig
    media: MediaConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path

    @property
    def command_address(self) -> tuple[str, int]:
        return (self.drone.host, self.drone.command_port)


def load_config(path: Optional[Path] = None) -> LinkConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "drone": {
                "host": constants.DEFAULT_DRONE_HOST,
                "command_port": str(constants.DEFAULT_COMMAND_PORT),
                "telemetry_port": str(constants.DEFAULT_TELEMETRY_PORT),
                "video_port": str(constants.DEFAULT_VIDEO_PORT),
            },
            "commands": {
                "max_attempts": "3",
                "retry_delay_seconds": "1.0",
                "timeout_seconds": "5.0",
                "maneuver_timeout_seconds": "20.0",
            },
            "telemetry": {
                "min_interval_seconds": "0.1",
                "link_timeout_seconds": "5.0",
            },
            "video": {
                "ffmpeg_path": constants.DEFAULT_FFMPEG_PATH,
                "viewer_host": constants.DEFAULT_VIEWER_HOST,
                "viewer_port": str(constants.DEFAULT_VIEWER_PORT),
            },
            "recording": {
                "codec": "libx264",
                "preset": "veryfast",
            },
            "media": {
                "root": str(constants.DEFAULT_MEDIA_ROOT),
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "health": {
                "enabled": "true",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    drone = DroneConfig(
        host=parser.get("drone", "host"),
        command_port=parser.getint("drone", "command_port"),
        telemetry_port=parser.getint("drone", "telemetry_port"),
        video_port=parser.getint("drone", "video_port"),
    )

    command_defaults = CommandConfig()
    commands = CommandConfig(
        max_attempts=max(
            1,
            parser.getint(
                "commands", "max_attempts", fallback=command_defaults.max_attempts
            ),
        ),
        retry_delay_seconds=max(
            0.0,
            parser.getfloat(
                "commands",
                "retry_delay_seconds",
                fallback=command_defaults.retry_delay_seconds,
            ),
        ),
        timeout_seconds=max(
            0.01,
            parser.getfloat(
                "commands", "timeout_seconds", fallback=command_defaults.timeout_seconds
            ),
        ),
        maneuver_timeout_seconds=max(
            0.01,
            parser.getfloat(
                "commands",
                "maneuver_timeout_seconds",
                fallback=command_defaults.maneuver_timeout_seconds,
            ),
        ),
    )

    telemetry_defaults = TelemetryConfig()
    try:
        min_interval = parser.getfloat(
            "telemetry",
            "min_interval_seconds",
            fallback=telemetry_defaults.min_interval_seconds,
        )
    except ValueError:
        min_interval = telemetry_defaults.min_interval_seconds

    telemetry = TelemetryConfig(
        min_interval_seconds=max(0.0, min_interval),
        link_timeout_seconds=max(
            0.5,
            parser.getfloat(
                "telemetry",
                "link_timeout_seconds",
                fallback=telemetry_defaults.link_timeout_seconds,
            ),
        ),
    )

    video_defaults = VideoConfig()
    video = VideoConfig(
        ffmpeg_path=parser.get("video", "ffmpeg_path"),
        viewer_host=parser.get("video", "viewer_host"),
        viewer_port=parser.getint("video", "viewer_port"),
        width=parser.getint("video", "width", fallback=video_defaults.width),
        height=parser.getint("video", "height", fallback=video_defaults.height),
        bitrate=parser.get("video", "bitrate", fallback=video_defaults.bitrate),
        framerate=parser.getint(
            "video", "framerate", fallback=video_defaults.framerate
        ),
        still_fps=max(
            0.1, parser.getfloat("video", "still_fps", fallback=video_defaults.still_fps)
        ),
        stop_grace_seconds=max(
            0.0,
            parser.getfloat(
                "video", "stop_grace_seconds", fallback=video_defaults.stop_grace_seconds
            ),
        ),
        port_reclaim_attempts=max(
            1,
            parser.getint(
                "video",
                "port_reclaim_attempts",
                fallback=video_defaults.port_reclaim_attempts,
            ),
        ),
        port_reclaim_backoff_seconds=max(
            0.0,
            parser.getfloat(
                "video",
                "port_reclaim_backoff_seconds",
                fallback=video_defaults.port_reclaim_backoff_seconds,
            ),
        ),
        pipe_buffer_limit=parser.getint(
            "video", "pipe_buffer_limit", fallback=video_defaults.pipe_buffer_limit
        ),
        viewer_buffer_limit=parser.getint(
            "video", "viewer_buffer_limit", fallback=video_defaults.viewer_buffer_limit
        ),
    )

    recording_defaults = RecordingConfig()
    recording = RecordingConfig(
        codec=parser.get("recording", "codec"),
        preset=parser.get("recording", "preset"),
        crf=parser.getint("recording", "crf", fallback=recording_defaults.crf),
        gop=max(1, parser.getint("recording", "gop", fallback=recording_defaults.gop)),
        stop_grace_seconds=max(
            0.0,
            parser.getfloat(
                "recording",
                "stop_grace_seconds",
                fallback=recording_defaults.stop_grace_seconds,
            ),
        ),
    )

    media_defaults = MediaConfig()
    media = MediaConfig(
        root=Path(parser.get("media", "root")).expanduser(),
        photo_poll_attempts=max(
            1,
            parser.getint(
                "media",
                "photo_poll_attempts",
                fallback=media_defaults.photo_poll_attempts,
            ),
        ),
        photo_poll_interval_seconds=max(
            0.0,
            parser.getfloat(
                "media",
                "photo_poll_interval_seconds",
                fallback=media_defaults.photo_poll_interval_seconds,
            ),
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=True),
    )

    return LinkConfig(
        drone=drone,
        commands=commands,
        telemetry=telemetry,
        video=video,
        recording=recording,
        media=media,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )


def save_config(config: LinkConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
