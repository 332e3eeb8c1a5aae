"""Command transport for the Tello text protocol.

The device accepts one plain-text command per UDP datagram on its control
port and answers the most recent command only: ``ok``, an error string, or a
bare number for read commands such as ``battery?``. Replies carry no
correlation id, so this module keeps at most one command outstanding and
attributes the first datagram received while it waits to that command.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, Optional

from .adapters.udp import DatagramHandler, ErrorHandler, open_udp_endpoint
from .config import CommandConfig
from .core.errors import (
    MalformedResponse,
    PreconditionFailed,
    ProtocolRejected,
    ProtocolTimeout,
    SessionError,
)
from .core.models import CommandCall, CommandResult
from .core.protocols import DatagramEndpoint

LOGGER = logging.getLogger(__name__)

# The device acknowledges these only after the maneuver has finished.
MANEUVER_COMMANDS = frozenset(
    {
        "takeoff",
        "land",
        "forward",
        "back",
        "left",
        "right",
        "up",
        "down",
        "cw",
        "ccw",
        "flip",
        "go",
        "curve",
    }
)

_NUMERIC_REPLY = re.compile(r"-?\d+")

EndpointFactory = Callable[..., Awaitable[DatagramEndpoint]]


def classify_reply(raw: bytes | str) -> str:
    """Return the normalized reply text or raise the matching protocol error.

    Raises:
        ProtocolRejected: The device answered with an error token.
        MalformedResponse: The reply is empty or not understood.
    """

    if isinstance(raw, bytes):
        text = raw.decode("utf-8", errors="replace")
    else:
        text = raw
    response = text.replace("\0", "").strip()

    if not response:
        raise MalformedResponse("Empty response")
    if response == "ok":
        return response
    if "error" in response.lower():
        raise ProtocolRejected(f"Drone error: {response}")
    if _NUMERIC_REPLY.fullmatch(response):
        return response
    raise MalformedResponse(f"Invalid response: {response!r}")


def command_verb(text: str) -> str:
    parts = text.split(maxsplit=1)
    return parts[0].lower() if parts else ""


class CommandTransport:
    """Retryable, timeout-bounded request/response over the command socket.

    Callers are serialized through a FIFO lock, so concurrent ``send`` calls
    queue rather than interleave. The single ``_awaiting`` slot is the only
    place a reply can land.
    """

    def __init__(
        self,
        config: CommandConfig,
        address: tuple[str, int],
        *,
        endpoint_factory: EndpointFactory = open_udp_endpoint,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        self._config = config
        self._address = address
        self._endpoint_factory = endpoint_factory
        self._monotonic = monotonic or time.monotonic
        self._endpoint: Optional[DatagramEndpoint] = None
        self._lock = asyncio.Lock()
        self._awaiting: Optional[asyncio.Future[bytes]] = None
        self._current: Optional[CommandCall] = None
        self._queued = 0

    @property
    def is_open(self) -> bool:
        return self._endpoint is not None

    @property
    def current_call(self) -> Optional[CommandCall]:
        return self._current

    @property
    def pending_count(self) -> int:
        """Commands in flight or waiting for the line."""
        return self._queued

    async def open(self) -> None:
        if self._endpoint is not None:
            return
        on_datagram: DatagramHandler = self._on_datagram
        on_error: ErrorHandler = self._on_error
        self._endpoint = await self._endpoint_factory(
            on_datagram, name="command", on_error=on_error
        )
        LOGGER.info(
            "Command transport ready for %s:%s", self._address[0], self._address[1]
        )

    def close(self) -> None:
        endpoint = self._endpoint
        self._endpoint = None
        future = self._awaiting
        if future is not None and not future.done():
            future.set_exception(ConnectionError("command transport closed"))
        if endpoint is not None:
            endpoint.close()

    async def send(self, text: str, *, timeout: Optional[float] = None) -> CommandResult:
        """Send one command and wait for its classified reply.

        Args:
            text: Command text, e.g. ``"takeoff"`` or ``"cw 90"``.
            timeout: Per-attempt reply window. Defaults to the configured
                timeout, or the maneuver timeout for flight commands.
        """

        command = text.strip()
        if not command:
            return CommandResult.fail(
                command, PreconditionFailed("Empty command"), attempts=0
            )

        self._queued += 1
        try:
            async with self._lock:
                call = CommandCall(text=command)
                self._current = call
                try:
                    call.outcome = await self._run(call, timeout)
                finally:
                    self._current = None
                return call.outcome
        finally:
            self._queued -= 1

    def _timeout_for(self, command: str) -> float:
        if command_verb(command) in MANEUVER_COMMANDS:
            return max(self._config.timeout_seconds, self._config.maneuver_timeout_seconds)
        return self._config.timeout_seconds

    async def _run(self, call: CommandCall, timeout: Optional[float]) -> CommandResult:
        if self._endpoint is None:
            return CommandResult.fail(
                call.text, PreconditionFailed("Command transport is not open"), attempts=0
            )

        wait = timeout if timeout is not None else self._timeout_for(call.text)
        payload = call.text.encode("utf-8")
        max_attempts = max(1, self._config.max_attempts)
        last_error: SessionError = ProtocolTimeout(
            f"Timeout waiting for response to command: {call.text}"
        )

        for attempt in range(1, max_attempts + 1):
            call.attempts_made = attempt
            call.deadline = self._monotonic() + wait
            LOGGER.debug(
                "Sending command %r (attempt %d/%d)", call.text, attempt, max_attempts
            )
            try:
                raw = await self._attempt(payload, wait)
                response = classify_reply(raw)
            except ProtocolRejected as exc:
                LOGGER.warning("Command %r rejected: %s", call.text, exc)
                return CommandResult.fail(call.text, exc, attempts=attempt)
            except asyncio.TimeoutError:
                last_error = ProtocolTimeout(
                    f"Timeout waiting for response to command: {call.text}"
                )
                LOGGER.warning(
                    "Command %r timed out (attempt %d/%d)",
                    call.text,
                    attempt,
                    max_attempts,
                )
            except MalformedResponse as exc:
                last_error = exc
                LOGGER.warning(
                    "Command %r got %s (attempt %d/%d)",
                    call.text,
                    exc,
                    attempt,
                    max_attempts,
                )
            except OSError as exc:
                if self._endpoint is None:
                    return CommandResult.fail(
                        call.text,
                        PreconditionFailed("Command transport closed"),
                        attempts=attempt,
                    )
                last_error = ProtocolTimeout(
                    f"Failed to transmit command {call.text!r}: {exc}",
                    code="transmit_failed",
                )
                LOGGER.warning(
                    "UDP error sending %r (attempt %d/%d): %s",
                    call.text,
                    attempt,
                    max_attempts,
                    exc,
                )
            else:
                LOGGER.debug("Command %r -> %r", call.text, response)
                return CommandResult.ok(call.text, response, attempts=attempt)

            if attempt < max_attempts:
                await asyncio.sleep(self._config.retry_delay_seconds)

        if isinstance(last_error, MalformedResponse):
            last_error = MalformedResponse(
                f"Invalid response after {max_attempts} attempts: {last_error}"
            )
        return CommandResult.fail(call.text, last_error, attempts=call.attempts_made)

    async def _attempt(self, payload: bytes, wait: float) -> bytes:
        endpoint = self._endpoint
        if endpoint is None:
            raise ConnectionError("command transport closed")

        future: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
        self._awaiting = future
        try:
            endpoint.sendto(payload, self._address)
            return await asyncio.wait_for(future, wait)
        finally:
            self._awaiting = None

    def _on_datagram(self, data: bytes, addr: tuple) -> None:
        if addr and addr[0] != self._address[0]:
            LOGGER.debug("Ignoring datagram from unexpected peer %s", addr)
            return
        future = self._awaiting
        if future is None or future.done():
            LOGGER.debug("Discarding unsolicited reply %r", data[:64])
            return
        future.set_result(data)

    def _on_error(self, exc: Exception) -> None:
        future = self._awaiting
        if future is not None and not future.done():
            future.set_exception(exc)
