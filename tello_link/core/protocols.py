"""Protocol definitions for session collaborators and callbacks."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol


EventCallback = Callable[[str, Mapping[str, Any]], Awaitable[None] | None]


class EventSink(Protocol):
    """Receives session events destined for the UI bridge."""

    def publish(self, event: str, payload: Mapping[str, Any]) -> None:
        """Deliver one event. Must not block."""
        ...


class VideoConsumer(Protocol):
    """Anything the video ingest forwards raw datagrams to."""

    name: str

    def feed(self, data: bytes) -> bool:
        """Hand over one datagram.

        Returns:
            False when the datagram was dropped for this consumer.
        """
        ...


class DatagramEndpoint(Protocol):
    """Minimal contract of a bound UDP endpoint."""

    def sendto(self, data: bytes, addr: Optional[tuple[str, int]] = None) -> None:
        ...

    def close(self) -> None:
        ...


class ProcessLauncher(Protocol):
    """Spawns an external process with piped stdio.

    Matches the signature of :func:`asyncio.create_subprocess_exec` so tests
    can substitute a fake.
    """

    def __call__(
        self, program: str, *args: str, **kwargs: Any
    ) -> Awaitable[asyncio.subprocess.Process]:
        ...


