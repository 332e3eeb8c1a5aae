"""Recording branch: a second ffmpeg child muxing the raw feed to MP4."""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional

from ..adapters.ffmpeg import SupervisedProcess, build_recording_args
from ..config import RecordingConfig, VideoConfig
from ..core.errors import (
    FileIOFailure,
    PreconditionFailed,
    ProcessCrash,
    SessionError,
)
from ..core.protocols import ProcessLauncher
from ..core.utils import fire_and_forget
from .transcoder import StreamSupervisor

LOGGER = logging.getLogger(__name__)

# ffmpeg exits with 255 when interrupted by SIGINT after finalizing output.
_FINALIZED_EXIT_CODES = (0, 255)


class RecordingState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"


RecordingListener = Callable[
    [RecordingState, Optional[Path], Optional[SessionError]], Any
]


class RecordingBranch:
    """Records the raw feed while the stream is live.

    The branch registers itself as a teardown hook on the stream supervisor,
    so any transition of the stream away from Live stops the recording
    before the video socket is released.
    """

    def __init__(
        self,
        config: RecordingConfig,
        video: VideoConfig,
        stream: StreamSupervisor,
        *,
        launcher: Optional[ProcessLauncher] = None,
    ) -> None:
        self._config = config
        self._video = video
        self._stream = stream
        self._launcher = launcher
        self._state = RecordingState.IDLE
        self._process: Optional[SupervisedProcess] = None
        self._path: Optional[Path] = None
        self._last_path: Optional[Path] = None
        self._last_error: Optional[SessionError] = None
        self._lock = asyncio.Lock()
        self._listeners: List[RecordingListener] = []
        stream.add_teardown_hook(self._on_stream_teardown)

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state == RecordingState.RECORDING

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @property
    def last_path(self) -> Optional[Path]:
        """Path of the most recently finalized recording, if it was usable."""
        return self._last_path

    @property
    def last_error(self) -> Optional[SessionError]:
        return self._last_error

    def add_listener(self, listener: RecordingListener) -> None:
        self._listeners.append(listener)

    async def start(self, path: Path) -> Path:
        """Begin recording to ``path``.

        Raises:
            PreconditionFailed: The stream is not live or a recording exists.
            FileIOFailure: The destination folder cannot be created.
            ProcessSpawnFailure: ffmpeg could not be started.
        """

        async with self._lock:
            if not self._stream.is_live:
                raise PreconditionFailed("Recording requires a live video stream")
            if self._state != RecordingState.IDLE:
                raise PreconditionFailed(f"Recording is already {self._state.value}")

            try:
                path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise FileIOFailure(f"Cannot create {path.parent}: {exc}") from exc

            process = SupervisedProcess(
                "recorder",
                self._video.ffmpeg_path,
                build_recording_args(self._config, self._video, path),
                launcher=self._launcher,
                on_exit=self._on_process_exit,
                buffer_limit=self._video.pipe_buffer_limit,
            )
            await process.start()

            self._process = process
            self._path = path
            self._stream.ingest.register(process)
            await self._transition(RecordingState.RECORDING, path)
            LOGGER.info("Recording started: %s", path)
            return path

    async def stop(self, reason: str = "requested") -> Optional[Path]:
        """Gracefully stop the recording so the container gets finalized.

        Returns the destination path, or None when nothing was recording. The
        recording-stopped notification is published by the process exit
        handler once ffmpeg has written the trailer.
        """

        async with self._lock:
            process = self._process
            if self._state != RecordingState.RECORDING or process is None:
                return None

            path = self._path
            LOGGER.info("Stopping recording (%s)", reason)
            await self._transition(RecordingState.STOPPING, path)
            self._stream.ingest.unregister(process)
            await process.stop(
                grace=self._config.stop_grace_seconds,
                graceful_signal=signal.SIGINT,
                close_stdin=True,
            )
            return path

    async def _on_stream_teardown(self, reason: str) -> None:
        if self._state == RecordingState.IDLE:
            return
        await self.stop(reason=f"stream {reason}")

    async def _on_process_exit(self, returncode: int, expected: bool) -> None:
        process = self._process
        path = self._path
        self._process = None
        self._path = None
        if process is not None:
            self._stream.ingest.unregister(process)

        error: Optional[SessionError] = None
        if not expected:
            error = ProcessCrash(f"Recorder exited unexpectedly with code {returncode}")
            LOGGER.error("%s", error)
        elif returncode not in _FINALIZED_EXIT_CODES:
            LOGGER.warning(
                "Recorder exited with code %s; %s may not be playable", returncode, path
            )

        if path is not None and not _has_content(path):
            error = error or FileIOFailure(f"Recording produced no output at {path}")
            path = None

        if path is not None:
            LOGGER.info("Recording finalized: %s", path)
        self._last_path = path
        self._last_error = error
        await self._transition(RecordingState.IDLE, path, error)

    async def _transition(
        self,
        state: RecordingState,
        path: Optional[Path],
        error: Optional[SessionError] = None,
    ) -> None:
        previous = self._state
        self._state = state
        LOGGER.debug("Recording state %s -> %s", previous.value, state.value)
        for listener in list(self._listeners):
            try:
                result = listener(state, path, error)
                if asyncio.iscoroutine(result):
                    await result
                else:
                    fire_and_forget(result, label="recording state")
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Recording state listener failed")


def _has_content(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except OSError:
        return False
