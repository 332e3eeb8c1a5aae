"""Live transcode supervisor: the stream session state machine.

::

    Idle/Failed --start--> Starting --spawned--> Live
    Starting --bind or spawn failure--> Failed
    Live --stop--> Stopping --exited--> Idle
    Live --unexpected exit--> Failed

Every state change goes through :meth:`StreamSupervisor._transition`. Any
transition away from Live first runs the registered teardown hooks (the
recording branch), then stops the transcoder, then releases the video
socket.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

from ..adapters.ffmpeg import SupervisedProcess, build_live_args
from ..config import VideoConfig
from ..core.errors import (
    FileIOFailure,
    PreconditionFailed,
    ProcessCrash,
    SessionError,
)
from ..core.protocols import ProcessLauncher
from ..core.utils import fire_and_forget
from .broadcaster import StreamBroadcaster
from .ingest import VideoIngest

LOGGER = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    LIVE = "live"
    STOPPING = "stopping"
    FAILED = "failed"


TeardownHook = Callable[[str], Awaitable[None]]
StateListener = Callable[[StreamState, Optional[SessionError]], Any]


class StreamSupervisor:
    """Owns the video ingest binding and the live transcoder child."""

    def __init__(
        self,
        config: VideoConfig,
        ingest: VideoIngest,
        broadcaster: StreamBroadcaster,
        *,
        still_path: Path,
        launcher: Optional[ProcessLauncher] = None,
    ) -> None:
        self._config = config
        self._ingest = ingest
        self._broadcaster = broadcaster
        self._still_path = still_path
        self._launcher = launcher
        self._state = StreamState.IDLE
        self._process: Optional[SupervisedProcess] = None
        self._lock = asyncio.Lock()
        self._listeners: List[StateListener] = []
        self._teardown_hooks: List[TeardownHook] = []
        self._crash_task: Optional[asyncio.Task[None]] = None
        self._last_error: Optional[SessionError] = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._state == StreamState.LIVE

    @property
    def still_path(self) -> Path:
        return self._still_path

    @property
    def ingest(self) -> VideoIngest:
        return self._ingest

    @property
    def last_error(self) -> Optional[SessionError]:
        return self._last_error

    @property
    def transcoder_pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def add_teardown_hook(self, hook: TeardownHook) -> None:
        """Register work that must finish before the stream leaves Live."""
        self._teardown_hooks.append(hook)

    async def start(self) -> None:
        """Bind ingest and spawn the transcoder.

        Raises:
            PreconditionFailed: The stream is already starting, live or stopping.
            PortUnavailable: The video port could not be bound.
            ProcessSpawnFailure: ffmpeg could not be started.
        """

        if self._state not in (StreamState.IDLE, StreamState.FAILED):
            raise PreconditionFailed(f"Stream is already {self._state.value}")

        async with self._lock:
            if self._state not in (StreamState.IDLE, StreamState.FAILED):
                raise PreconditionFailed(f"Stream is already {self._state.value}")
            await self._transition(StreamState.STARTING)

            try:
                await self._ingest.start()
                self._prepare_still_path()
                process = SupervisedProcess(
                    "transcoder",
                    self._config.ffmpeg_path,
                    build_live_args(self._config, self._still_path),
                    launcher=self._launcher,
                    on_stdout=self._broadcaster.broadcast,
                    on_exit=self._on_process_exit,
                    buffer_limit=self._config.pipe_buffer_limit,
                )
                await process.start()
            except SessionError as exc:
                self._ingest.stop()
                await self._transition(StreamState.FAILED, exc)
                raise
            except OSError as exc:
                self._ingest.stop()
                error = FileIOFailure(f"Cannot prepare still frame {self._still_path}: {exc}")
                await self._transition(StreamState.FAILED, error)
                raise error from exc

            self._process = process
            self._ingest.register(process)
            await self._transition(StreamState.LIVE)

    async def stop(self, reason: str = "requested") -> None:
        """Stop the live stream; a no-op when already idle."""

        async with self._lock:
            if self._state == StreamState.IDLE:
                return
            if self._state == StreamState.FAILED:
                await self._transition(StreamState.IDLE)
                return

            await self._transition(StreamState.STOPPING)
            await self._teardown(reason)

            process = self._process
            self._process = None
            if process is not None:
                self._ingest.unregister(process)
                await process.stop(grace=self._config.stop_grace_seconds)
            self._ingest.stop()
            await self._transition(StreamState.IDLE)

    async def _teardown(self, reason: str) -> None:
        for hook in list(self._teardown_hooks):
            try:
                await hook(reason)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Stream teardown hook failed")

    def _on_process_exit(self, returncode: int, expected: bool) -> None:
        if expected:
            return
        # Handled outside the process waiter so stop() can await the waiter.
        self._crash_task = fire_and_forget(
            self._handle_crash(returncode), label="transcoder crash"
        )

    async def _handle_crash(self, returncode: int) -> None:
        async with self._lock:
            if self._state != StreamState.LIVE:
                return
            process = self._process
            self._process = None

            detail = ""
            if process is not None and process.stderr_tail:
                detail = f": {process.stderr_tail[-1]}"
            error = ProcessCrash(
                f"Transcoder exited unexpectedly with code {returncode}{detail}"
            )
            LOGGER.error("%s", error)

            await self._teardown("transcoder crashed")
            if process is not None:
                self._ingest.unregister(process)
            self._ingest.stop()
            await self._transition(StreamState.FAILED, error)

    def _prepare_still_path(self) -> None:
        self._still_path.parent.mkdir(parents=True, exist_ok=True)
        # A frame left over from a previous session must never be captured.
        self._still_path.unlink(missing_ok=True)

    async def _transition(
        self, state: StreamState, error: Optional[SessionError] = None
    ) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        if error is not None:
            self._last_error = error
        LOGGER.info("Stream state %s -> %s", previous.value, state.value)

        for listener in list(self._listeners):
            try:
                result = listener(state, error)
                if asyncio.iscoroutine(result):
                    await result
                else:
                    fire_and_forget(result, label="stream state")
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Stream state listener failed")
