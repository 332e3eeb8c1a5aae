"""Session coordinator: one drone, its video pipeline and the UI bridge."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .bridge import BridgeCommand, BridgeEvent, EventBus, parse_command
from .commands import CommandTransport
from .config import LinkConfig
from .connection import ConnectionState, LinkMonitor
from .core.errors import (
    MediaStorageError,
    PreconditionFailed,
    ProcessCrash,
    SessionError,
)
from .core.models import ActionResult, CommandResult
from .core.protocols import ProcessLauncher
from .core.utils import fire_and_forget
from .health import HealthReporter
from .media import MediaLibrary
from .server import ViewerServer
from .telemetry import TelemetryDecoder, TelemetryListener, TelemetrySnapshot
from .video import (
    PhotoCapture,
    RecordingBranch,
    RecordingState,
    StreamBroadcaster,
    StreamState,
    StreamSupervisor,
    VideoIngest,
)

LOGGER = logging.getLogger(__name__)


class DroneSession:
    """Owns every session component and exposes the device-facing operations.

    All operations return an :class:`ActionResult`; surfaced failures are also
    published as ``drone:error`` so the UI can show a message and revert the
    control that triggered them. Components may be injected for testing;
    anything not supplied is built from ``config``.
    """

    def __init__(
        self,
        config: LinkConfig,
        *,
        bus: Optional[EventBus] = None,
        health: Optional[HealthReporter] = None,
        transport: Optional[CommandTransport] = None,
        telemetry: Optional[TelemetryListener] = None,
        link: Optional[LinkMonitor] = None,
        media: Optional[MediaLibrary] = None,
        ingest: Optional[VideoIngest] = None,
        broadcaster: Optional[StreamBroadcaster] = None,
        launcher: Optional[ProcessLauncher] = None,
        server: Optional[ViewerServer] = None,
        serve: bool = True,
    ) -> None:
        self._config = config
        self._bus = bus or EventBus()
        self._health = health or HealthReporter()
        self._transport = transport or CommandTransport(
            config.commands, config.command_address
        )
        self._decoder = TelemetryDecoder(
            min_interval=config.telemetry.min_interval_seconds
        )
        self._link = link or LinkMonitor(
            link_timeout=config.telemetry.link_timeout_seconds
        )
        self._telemetry = telemetry or TelemetryListener(
            self._decoder,
            config.drone.telemetry_port,
            on_snapshot=self._on_snapshot,
            on_activity=self._link.note_activity,
        )
        self._media = media or MediaLibrary(config.media.root)

        video = config.video
        self._broadcaster = broadcaster or StreamBroadcaster(
            buffer_limit=video.viewer_buffer_limit
        )
        self._ingest = ingest or VideoIngest(
            config.drone.video_port,
            process_name=Path(video.ffmpeg_path).name,
            reclaim_attempts=video.port_reclaim_attempts,
            reclaim_backoff=video.port_reclaim_backoff_seconds,
        )
        self._stream = StreamSupervisor(
            video,
            self._ingest,
            self._broadcaster,
            still_path=self._media.live_still_path,
            launcher=launcher,
        )
        self._recording = RecordingBranch(
            config.recording, video, self._stream, launcher=launcher
        )
        self._photos = PhotoCapture(
            self._stream,
            poll_attempts=config.media.photo_poll_attempts,
            poll_interval=config.media.photo_poll_interval_seconds,
        )

        if server is None and serve:
            server = ViewerServer(
                video.viewer_host,
                video.viewer_port,
                broadcaster=self._broadcaster,
                bus=self._bus,
                dispatcher=self.handle,
                reporter=self._health if config.health.enabled else None,
            )
        self._server = server

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._started = False
        self._closed = False
        self._shutdown_requested = asyncio.Event()
        self._link_announced = False
        self._stream_lock = asyncio.Lock()

        self._link.add_listener(self._on_link_state)
        self._stream.add_state_listener(self._on_stream_state)
        self._recording.add_listener(self._on_recording_state)

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def link(self) -> LinkMonitor:
        return self._link

    @property
    def stream(self) -> StreamSupervisor:
        return self._stream

    @property
    def recording(self) -> RecordingBranch:
        return self._recording

    @property
    def media(self) -> MediaLibrary:
        return self._media

    @property
    def server(self) -> Optional[ViewerServer]:
        return self._server

    @property
    def snapshot(self) -> TelemetrySnapshot:
        return self._decoder.snapshot

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> None:
        """Prepare media folders and open the sockets the session listens on."""

        if self._started:
            return
        self._loop = asyncio.get_running_loop()
        self._started = True
        self._closed = False

        try:
            self._media.initialize()
        except MediaStorageError as exc:
            LOGGER.error("%s", exc)
            await self._health.update("media", False, str(exc))
            self._publish_error(exc)
        else:
            await self._health.update("media", True, str(self._media.root))

        await self._transport.open()
        await self._health.update("command_link", False, "not connected")

        try:
            await self._telemetry.start()
        except OSError as exc:
            LOGGER.warning("Telemetry port unavailable: %s", exc)
            await self._health.update("telemetry", False, str(exc))
        else:
            await self._health.update("telemetry", True, "listening")
        self._link.start()

        await self._health.update("stream", True, self._stream.state.value)
        await self._health.update("recording", True, self._recording.state.value)

        if self._server is not None:
            try:
                await self._server.start()
            except OSError as exc:
                LOGGER.error("Failed to start viewer server: %s", exc)
                await self._health.update("viewer_server", False, str(exc))
            else:
                await self._health.update(
                    "viewer_server", True, f"port {self._server.port}"
                )

        await self._health.set_session_state("active", healthy=True)
        LOGGER.info("Drone session started")

    async def shutdown(self) -> None:
        """Tear everything down: recording, then stream, then sockets."""

        if self._closed:
            return
        self._closed = True
        LOGGER.info("Shutting down drone session")
        await self._health.set_session_state(
            "stopping", healthy=False, detail="shutdown requested"
        )

        await self._recording.stop(reason="shutdown")
        if self._stream.state != StreamState.IDLE:
            await self._stream.stop(reason="shutdown")
            if self._link.is_connected:
                await self._send_best_effort("streamoff")

        await self._link.stop()
        self._telemetry.stop()
        self._transport.close()
        if self._server is not None:
            await self._server.stop()
        self._link.mark_disconnected("shutdown")
        self._started = False
        self._shutdown_requested.set()
        LOGGER.info("Drone session stopped")

    def request_shutdown(self) -> None:
        """Ask the owner of the session to shut it down."""
        self._shutdown_requested.set()

    async def wait_for_shutdown_request(self) -> None:
        await self._shutdown_requested.wait()

    # ------------------------------------------------------------------
    # Device operations

    async def connect(self) -> ActionResult:
        """Enter SDK mode with the ``command`` handshake."""

        self._link.mark_connecting()
        result = await self._transport.send("command")
        if not result.success:
            self._link.mark_disconnected(result.error_message or "handshake failed")
            return self._command_failed(result)
        self._link.mark_connected()
        return ActionResult(success=True, data=_command_data(result))

    async def send_command(self, text: str) -> ActionResult:
        result = await self._transport.send(text)
        if not result.success:
            return self._command_failed(result)
        return ActionResult(success=True, data=_command_data(result))

    async def start_stream(self) -> ActionResult:
        """Send ``streamon`` and bring up the transcoder.

        Only one start may be in flight: a start requested while another one
        is still waiting for ``streamon`` fails with ``PreconditionFailed``.
        """

        state = self._stream.state
        if self._stream_lock.locked():
            return self._fail(PreconditionFailed("Stream start already in progress"))
        if state not in (StreamState.IDLE, StreamState.FAILED):
            return self._fail(PreconditionFailed(f"Stream is already {state.value}"))

        async with self._stream_lock:
            result = await self._transport.send("streamon")
            if not result.success:
                self._publish_stream_status(self._stream.state)
                return self._command_failed(result)

            try:
                await self._stream.start()
            except PreconditionFailed as exc:
                return self._fail(exc)
            except SessionError as exc:
                await self._send_best_effort("streamoff")
                return self._fail(exc)

            return ActionResult(success=True, data=self._stream_data())

    async def stop_stream(self) -> ActionResult:
        async with self._stream_lock:
            if self._stream.state == StreamState.IDLE:
                return ActionResult(success=True, data=self._stream_data())
            await self._stream.stop()
            await self._send_best_effort("streamoff")
            return ActionResult(success=True, data=self._stream_data())

    async def toggle_stream(self) -> ActionResult:
        if self._stream_lock.locked():
            return self._fail(
                PreconditionFailed("Stream transition already in progress")
            )
        if self._stream.state in (StreamState.STARTING, StreamState.LIVE):
            return await self.stop_stream()
        return await self.start_stream()

    async def start_recording(self) -> ActionResult:
        try:
            artifact = self._media.new_recording()
            path = await self._recording.start(artifact.path)
        except SessionError as exc:
            return self._fail(exc)
        return ActionResult(success=True, path=path)

    async def stop_recording(self) -> ActionResult:
        path = await self._recording.stop()
        if path is None:
            return self._fail(PreconditionFailed("No recording in progress"))
        error = self._recording.last_error
        if error is not None:
            # Already published by the recording listener.
            return ActionResult.from_error(error)
        return ActionResult(success=True, path=self._recording.last_path)

    async def toggle_recording(self) -> ActionResult:
        if self._recording.state != RecordingState.IDLE:
            return await self.stop_recording()
        return await self.start_recording()

    async def capture_photo(self) -> ActionResult:
        try:
            artifact = self._media.new_photo()
            photo = await self._photos.capture(artifact.path)
        except SessionError as exc:
            return self._fail(exc)
        self._bus.publish(BridgeEvent.PHOTO_CAPTURED, {"path": str(photo.path)})
        return ActionResult(success=True, path=photo.path, data={"size": photo.size})

    # ------------------------------------------------------------------
    # Bridge dispatch

    async def handle(self, command: Any, data: Any = None) -> ActionResult:
        """Run one bridge command and return its result."""

        parsed = parse_command(command)
        if parsed is None:
            return self._fail(
                SessionError(f"Unknown bridge command: {command}", code="unknown_command")
            )

        if parsed == BridgeCommand.CONNECT:
            return await self.connect()
        if parsed == BridgeCommand.COMMAND:
            text = _command_text(data)
            if not text:
                return self._fail(PreconditionFailed("drone:command requires a command"))
            return await self.send_command(text)
        if parsed == BridgeCommand.STREAM_TOGGLE:
            return await self.toggle_stream()
        if parsed == BridgeCommand.RECORDING_TOGGLE:
            return await self.toggle_recording()
        if parsed == BridgeCommand.CAPTURE_PHOTO:
            return await self.capture_photo()

        self.request_shutdown()
        return ActionResult(success=True)

    def submit(
        self, command: Any, data: Any = None
    ) -> concurrent.futures.Future[ActionResult]:
        """Schedule :meth:`handle` on the session loop from another thread."""

        loop = self._loop
        if loop is None or not self._started:
            raise RuntimeError("Drone session is not running")
        return asyncio.run_coroutine_threadsafe(self.handle(command, data), loop)

    # ------------------------------------------------------------------
    # Event plumbing

    def _on_snapshot(self, snapshot: TelemetrySnapshot) -> None:
        self._bus.publish(BridgeEvent.STATE_UPDATE, snapshot.as_dict())

    def _on_link_state(self, state: ConnectionState, detail: Optional[str]) -> None:
        if state == ConnectionState.CONNECTING:
            return
        if state == ConnectionState.CONNECTED:
            self._link_announced = True
            self._bus.publish(
                BridgeEvent.CONNECTED, {"host": self._config.drone.host}
            )
        elif self._link_announced:
            # Lost or disconnected: announce once per established link.
            self._link_announced = False
            self._bus.publish(BridgeEvent.DISCONNECTED, {"reason": detail})
        fire_and_forget(self._update_link_health(state, detail), label="link health")

    async def _update_link_health(
        self, state: ConnectionState, detail: Optional[str]
    ) -> None:
        if state == ConnectionState.CONNECTED:
            await self._health.update("command_link", True, "connected")
            await self._health.update("telemetry", True, "receiving")
            return
        await self._health.update("command_link", False, detail)
        if state == ConnectionState.LOST:
            await self._health.update("telemetry", False, detail)

    async def _on_stream_state(
        self, state: StreamState, error: Optional[SessionError]
    ) -> None:
        self._publish_stream_status(state)
        # Start failures are reported by start_stream; only crashes arrive here.
        if state == StreamState.FAILED and isinstance(error, ProcessCrash):
            self._publish_error(error)
        await self._health.update(
            "stream", state != StreamState.FAILED, str(error) if error else state.value
        )

    async def _on_recording_state(
        self,
        state: RecordingState,
        path: Optional[Path],
        error: Optional[SessionError],
    ) -> None:
        self._bus.publish(
            BridgeEvent.RECORDING_STATUS,
            {
                "state": state.value,
                "recording": state == RecordingState.RECORDING,
                "path": str(path) if path is not None else None,
            },
        )
        if state == RecordingState.IDLE:
            if path is not None:
                self._bus.publish(BridgeEvent.RECORDING_STOPPED, {"path": str(path)})
            if error is not None:
                self._publish_error(error)
        await self._health.update(
            "recording", error is None, str(error) if error else state.value
        )

    def _publish_stream_status(self, state: StreamState) -> None:
        self._bus.publish(
            BridgeEvent.STREAM_STATUS,
            {"state": state.value, "live": state == StreamState.LIVE},
        )

    def _publish_error(self, error: SessionError) -> None:
        self._bus.publish(BridgeEvent.ERROR, {"code": error.code, "message": str(error)})

    def _fail(self, error: SessionError) -> ActionResult:
        LOGGER.warning("%s", error)
        self._publish_error(error)
        return ActionResult.from_error(error)

    def _command_failed(self, result: CommandResult) -> ActionResult:
        LOGGER.warning(
            "Command %r failed after %d attempt(s): %s",
            result.command,
            result.attempts,
            result.error_message,
        )
        self._bus.publish(
            BridgeEvent.ERROR,
            {
                "code": result.error_code,
                "message": result.error_message,
                "command": result.command,
            },
        )
        return ActionResult(
            success=False,
            data=_command_data(result),
            error_code=result.error_code,
            error_message=result.error_message,
        )

    async def _send_best_effort(self, text: str) -> None:
        if not self._transport.is_open:
            return
        result = await self._transport.send(text)
        if not result.success:
            LOGGER.warning("%s was not acknowledged: %s", text, result.error_message)

    def _stream_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "state": self._stream.state.value,
            "live": self._stream.is_live,
        }
        if self._server is not None and self._server.is_running:
            data["url"] = f"ws://{self._config.video.viewer_host}:{self._server.port}/stream"
        return data


def _command_data(result: CommandResult) -> Dict[str, Any]:
    return {
        "command": result.command,
        "response": result.response,
        "attempts": result.attempts,
    }


def _command_text(data: Any) -> str:
    if isinstance(data, str):
        return data.strip()
    if isinstance(data, dict):
        for key in ("command", "text"):
            value = data.get(key)
            if isinstance(value, str):
                return value.strip()
    return ""
