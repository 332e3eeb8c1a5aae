"""Link state tracking for the drone control connection.

The Tello never announces that it went away; the only sign of life is the
telemetry push stream. :class:`LinkMonitor` follows the state reached by the
``command`` handshake and declares the link lost when telemetry stays silent
for longer than the configured timeout.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from enum import Enum
from typing import Any, Callable, List, Optional

from .core.utils import fire_and_forget

LOGGER = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Current state of the drone link."""

    DISCONNECTED = "disconnected"
    """No handshake has succeeded yet, or the session was shut down."""

    CONNECTING = "connecting"
    """The ``command`` handshake is in flight."""

    CONNECTED = "connected"
    """Handshake succeeded and telemetry is arriving."""

    LOST = "lost"
    """Handshake succeeded earlier but telemetry went silent."""


LinkListener = Callable[[ConnectionState, Optional[str]], Any]


class LinkMonitor:
    """Tracks the link state and watches telemetry liveness."""

    def __init__(
        self,
        *,
        link_timeout: float = 5.0,
        check_interval: Optional[float] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        self._link_timeout = link_timeout
        self._check_interval = check_interval or max(0.05, link_timeout / 4)
        self._monotonic = monotonic or time.monotonic
        self._state = ConnectionState.DISCONNECTED
        self._last_activity: Optional[float] = None
        self._listeners: List[LinkListener] = []
        self._watch_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def last_activity(self) -> Optional[float]:
        return self._last_activity

    def add_listener(self, listener: LinkListener) -> None:
        """Register ``listener(state, detail)`` for every state change."""
        self._listeners.append(listener)

    def mark_connecting(self) -> None:
        self._transition(ConnectionState.CONNECTING, "handshake started")

    def mark_connected(self) -> None:
        # The handshake reply counts as a sign of life.
        self._last_activity = self._monotonic()
        self._transition(ConnectionState.CONNECTED, "handshake acknowledged")

    def mark_disconnected(self, reason: str) -> None:
        self._transition(ConnectionState.DISCONNECTED, reason)

    def note_activity(self) -> None:
        """Record that a telemetry datagram arrived."""

        self._last_activity = self._monotonic()
        if self._state == ConnectionState.LOST:
            self._transition(ConnectionState.CONNECTED, "telemetry resumed")

    def check(self) -> ConnectionState:
        """Evaluate liveness once; called periodically by the watchdog."""

        if self._state != ConnectionState.CONNECTED or self._last_activity is None:
            return self._state
        silence = self._monotonic() - self._last_activity
        if silence > self._link_timeout:
            self._transition(
                ConnectionState.LOST, f"no telemetry for {silence:.1f}s"
            )
        return self._state

    def start(self) -> None:
        if self._watch_task is not None and not self._watch_task.done():
            return
        self._watch_task = asyncio.create_task(self._watch())

    async def stop(self) -> None:
        task = self._watch_task
        self._watch_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _watch(self) -> None:
        while True:
            await asyncio.sleep(self._check_interval)
            self.check()

    def _transition(self, state: ConnectionState, detail: Optional[str]) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        log = LOGGER.warning if state == ConnectionState.LOST else LOGGER.info
        log("Link state %s -> %s (%s)", previous.value, state.value, detail)

        for listener in list(self._listeners):
            try:
                result = listener(state, detail)
            except Exception:
                LOGGER.warning("Link listener failed", exc_info=True)
                continue
            fire_and_forget(result, label="link state")
