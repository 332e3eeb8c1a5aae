"""Local HTTP server: live stream viewers, UI bridge socket and health."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

from aiohttp import WSMsgType, web

from .bridge import EventBus
from .core.models import ActionResult
from .health import HealthReporter, add_health_routes
from .video.broadcaster import StreamBroadcaster

LOGGER = logging.getLogger(__name__)

Dispatcher = Callable[[str, Any], Awaitable[ActionResult]]

_BRIDGE_QUEUE_SIZE = 256


class ViewerServer:
    """aiohttp application serving the viewer and bridge websockets.

    Routes:
        ``GET /stream``: websocket; receives the live MPEG-TS as binary frames.
        ``GET /bridge``: websocket; receives ``{"event", "payload"}`` messages
            and may send ``{"command", "data", "id"}`` requests, answered with
            ``{"id", "result"}``.
        ``GET /healthz``: JSON health snapshot when a reporter is supplied.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        broadcaster: StreamBroadcaster,
        bus: Optional[EventBus] = None,
        dispatcher: Optional[Dispatcher] = None,
        reporter: Optional[HealthReporter] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._broadcaster = broadcaster
        self._bus = bus
        self._dispatcher = dispatcher
        self._reporter = reporter
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._bridge_clients: Set[web.WebSocketResponse] = set()

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    @property
    def port(self) -> int:
        """The bound port, which differs from the configured one when that is 0."""

        if self._runner is not None:
            for address in self._runner.addresses:
                if isinstance(address, tuple) and len(address) >= 2:
                    return int(address[1])
        return self._port

    @property
    def bridge_client_count(self) -> int:
        return len(self._bridge_clients)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/stream", self._handle_stream)
        if self._bus is not None:
            app.router.add_get("/bridge", self._handle_bridge)
        if self._reporter is not None:
            add_health_routes(app, self._reporter)
        return app

    async def start(self) -> None:
        """Bind the listening socket.

        Raises:
            OSError: The port is already in use or not permitted.
        """

        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        self._site = site
        LOGGER.info(
            "Viewer server listening on ws://%s:%s/stream", self._host, self.port
        )

    async def stop(self) -> None:
        for socket in list(self._bridge_clients):
            with contextlib.suppress(ConnectionError, RuntimeError):
                await socket.close()
        self._bridge_clients.clear()
        await self._broadcaster.close_all()

        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_stream(self, request: web.Request) -> web.WebSocketResponse:
        socket = web.WebSocketResponse()
        await socket.prepare(request)
        connection = self._broadcaster.register(
            socket, transport=request.transport, remote=request.remote
        )
        try:
            # Viewers only receive; drain until the client goes away.
            async for message in socket:
                if message.type == WSMsgType.ERROR:
                    LOGGER.debug(
                        "Viewer %d socket error: %s",
                        connection.viewer_id,
                        socket.exception(),
                    )
                    break
        finally:
            self._broadcaster.unregister(connection)
        return socket

    async def _handle_bridge(self, request: web.Request) -> web.WebSocketResponse:
        socket = web.WebSocketResponse()
        await socket.prepare(request)

        outbox: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(_BRIDGE_QUEUE_SIZE)

        def _enqueue(event: str, payload: Mapping[str, Any]) -> None:
            try:
                outbox.put_nowait({"event": event, "payload": dict(payload)})
            except asyncio.QueueFull:
                LOGGER.warning("Bridge client too slow; dropping %s", event)

        assert self._bus is not None
        unsubscribe = self._bus.subscribe(_enqueue)
        self._bridge_clients.add(socket)
        sender = asyncio.create_task(self._pump_outbox(socket, outbox))
        requests: Set[asyncio.Task[None]] = set()
        LOGGER.info("Bridge client connected from %s", request.remote or "unknown")

        try:
            async for message in socket:
                if message.type == WSMsgType.TEXT:
                    task = asyncio.create_task(self._serve_request(message.data, outbox))
                    requests.add(task)
                    task.add_done_callback(requests.discard)
                elif message.type == WSMsgType.ERROR:
                    break
        finally:
            unsubscribe()
            self._bridge_clients.discard(socket)
            for task in list(requests) + [sender]:
                task.cancel()
            await asyncio.gather(*requests, sender, return_exceptions=True)
            LOGGER.info("Bridge client %s disconnected", request.remote or "unknown")
        return socket

    async def _serve_request(
        self, raw: str, outbox: asyncio.Queue[Dict[str, Any]]
    ) -> None:
        try:
            request = json.loads(raw)
        except ValueError:
            LOGGER.warning("Ignoring malformed bridge message: %.80s", raw)
            return
        if not isinstance(request, dict):
            LOGGER.warning("Ignoring malformed bridge message: %.80s", raw)
            return

        request_id = request.get("id")
        if self._dispatcher is None:
            result = ActionResult(
                success=False,
                error_code="unsupported",
                error_message="Commands are not accepted on this server",
            )
        else:
            result = await self._dispatcher(
                str(request.get("command", "")), request.get("data")
            )
        await outbox.put({"id": request_id, "result": result.as_dict()})

    async def _pump_outbox(
        self, socket: web.WebSocketResponse, outbox: asyncio.Queue[Dict[str, Any]]
    ) -> None:
        while True:
            message = await outbox.get()
            if socket.closed:
                return
            try:
                await socket.send_json(message)
            except (ConnectionError, RuntimeError) as exc:
                LOGGER.debug("Bridge send failed: %s", exc)
                return
