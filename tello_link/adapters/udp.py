"""Asyncio UDP endpoint used for the command, telemetry and video sockets."""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Callable, Optional, cast

LOGGER = logging.getLogger(__name__)

DatagramHandler = Callable[[bytes, tuple], None]
ErrorHandler = Callable[[Exception], None]


class UdpEndpoint(asyncio.DatagramProtocol):
    """Thin protocol object bridging asyncio datagram callbacks to handlers."""

    def __init__(
        self,
        on_datagram: DatagramHandler,
        *,
        name: str,
        on_error: Optional[ErrorHandler] = None,
    ) -> None:
        self.name = name
        self._on_datagram = on_datagram
        self._on_error = on_error
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._closed: Optional[asyncio.Future[None]] = None

    @property
    def local_address(self) -> Optional[tuple]:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")

    @property
    def is_open(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = cast(asyncio.DatagramTransport, transport)
        self._closed = asyncio.get_running_loop().create_future()
        LOGGER.debug("UDP endpoint %s bound to %s", self.name, self.local_address)

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        try:
            self._on_datagram(data, addr)
        except Exception:  # pragma: no cover - defensive logging
            LOGGER.exception("UDP endpoint %s handler raised", self.name)

    def error_received(self, exc: Exception) -> None:
        LOGGER.warning("UDP endpoint %s error: %s", self.name, exc)
        if self._on_error is not None:
            self._on_error(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        LOGGER.debug("UDP endpoint %s closed", self.name)
        if self._closed is not None and not self._closed.done():
            self._closed.set_result(None)

    def sendto(self, data: bytes, addr: Optional[tuple[str, int]] = None) -> None:
        if self._transport is None or self._transport.is_closing():
            raise ConnectionError(f"UDP endpoint {self.name} is not open")
        self._transport.sendto(data, addr)

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()

    async def wait_closed(self) -> None:
        if self._closed is not None:
            await self._closed


async def open_udp_endpoint(
    on_datagram: DatagramHandler,
    *,
    name: str,
    local_addr: tuple[str, int] = ("0.0.0.0", 0),
    on_error: Optional[ErrorHandler] = None,
    receive_buffer: Optional[int] = None,
) -> UdpEndpoint:
    """Bind a UDP socket and attach a :class:`UdpEndpoint` to it.

    Raises:
        OSError: If the local address cannot be bound.
    """

    loop = asyncio.get_running_loop()
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        if receive_buffer:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, receive_buffer)
            except OSError as exc:
                LOGGER.debug("Could not enlarge receive buffer for %s: %s", name, exc)
        sock.bind(local_addr)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise

    _, protocol = await loop.create_datagram_endpoint(
        lambda: UdpEndpoint(on_datagram, name=name, on_error=on_error),
        sock=sock,
    )
    return protocol
