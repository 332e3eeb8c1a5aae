"""Constants used across the tello-link package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "tello-link"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"
DEFAULT_MEDIA_ROOT = Path.home() / "Videos" / "TelloMedia"

DEFAULT_DRONE_HOST = "192.168.10.1"
DEFAULT_COMMAND_PORT = 8889
DEFAULT_TELEMETRY_PORT = 8890
DEFAULT_VIDEO_PORT = 11111

DEFAULT_VIEWER_HOST = "127.0.0.1"
DEFAULT_VIEWER_PORT = 3001

DEFAULT_FFMPEG_PATH = "ffmpeg"
