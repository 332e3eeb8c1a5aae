"""Fan-out of the transcoded transport stream to connected viewers."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ViewerConnection:
    """A connected viewer socket. Membership only; it owns no media."""

    viewer_id: int
    socket: Any
    transport: Any = None
    remote: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sent_chunks: int = 0
    skipped_chunks: int = 0
    sending: Optional[asyncio.Task[bool]] = None

    def is_ready(self, buffer_limit: int) -> bool:
        if getattr(self.socket, "closed", True):
            return False
        transport = self.transport
        if transport is None:
            return True
        if transport.is_closing():
            return False
        return transport.get_write_buffer_size() <= buffer_limit

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.viewer_id,
            "remote": self.remote,
            "connectedAt": self.connected_at.isoformat(timespec="seconds"),
            "sent": self.sent_chunks,
            "skipped": self.skipped_chunks,
        }


class StreamBroadcaster:
    """Writes each chunk to every ready viewer; unready viewers miss it.

    There is no per-viewer backlog. Removal while a broadcast is iterating is
    safe because every broadcast works on a snapshot of the membership.
    """

    def __init__(self, *, buffer_limit: int = 512 * 1024) -> None:
        self._buffer_limit = buffer_limit
        self._viewers: Dict[int, ViewerConnection] = {}
        self._ids = itertools.count(1)

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    def viewers(self) -> List[ViewerConnection]:
        return list(self._viewers.values())

    def register(
        self, socket: Any, *, transport: Any = None, remote: Optional[str] = None
    ) -> ViewerConnection:
        connection = ViewerConnection(
            viewer_id=next(self._ids), socket=socket, transport=transport, remote=remote
        )
        self._viewers[connection.viewer_id] = connection
        LOGGER.info(
            "Viewer %d connected from %s (%d total)",
            connection.viewer_id,
            remote or "unknown",
            len(self._viewers),
        )
        return connection

    def unregister(self, connection: ViewerConnection) -> None:
        if self._viewers.pop(connection.viewer_id, None) is not None:
            LOGGER.info(
                "Viewer %d disconnected (%d remaining)",
                connection.viewer_id,
                len(self._viewers),
            )

    async def broadcast(self, chunk: bytes) -> int:
        """Hand ``chunk`` to every ready viewer. Returns the number reached.

        Each viewer has at most one write in flight. A viewer whose previous
        write is still waiting on its socket misses this chunk, so a stalled
        viewer never delays the others or the transcoder output.
        """

        writes: List[asyncio.Task[bool]] = []
        for connection in tuple(self._viewers.values()):
            if connection.sending is not None or not connection.is_ready(
                self._buffer_limit
            ):
                connection.skipped_chunks += 1
                continue
            task = asyncio.create_task(self._send(connection, chunk))
            connection.sending = task
            writes.append(task)

        if not writes:
            return 0
        # Writes that do not block complete within this turn of the loop.
        await asyncio.sleep(0)
        return sum(
            1
            for task in writes
            if task.done() and not task.cancelled() and task.result()
        )

    async def _send(self, connection: ViewerConnection, chunk: bytes) -> bool:
        try:
            await connection.socket.send_bytes(chunk)
        except (ConnectionError, RuntimeError) as exc:
            LOGGER.debug("Dropping viewer %d: %s", connection.viewer_id, exc)
            self.unregister(connection)
            return False
        finally:
            connection.sending = None
        connection.sent_chunks += 1
        return True

    async def close_all(self) -> None:
        for connection in tuple(self._viewers.values()):
            self.unregister(connection)
            if connection.sending is not None:
                connection.sending.cancel()
            close = getattr(connection.socket, "close", None)
            if close is None:
                continue
            try:
                await close()
            except (ConnectionError, RuntimeError):
                continue
