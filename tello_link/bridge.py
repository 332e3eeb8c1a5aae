"""Event and command contract between the session and the UI bridge."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from .core.protocols import EventCallback
from .core.utils import fire_and_forget

LOGGER = logging.getLogger(__name__)


class BridgeEvent(str, Enum):
    """Events published by the session coordinator."""

    CONNECTED = "drone:connected"
    DISCONNECTED = "drone:disconnected"
    STATE_UPDATE = "drone:state-update"
    STREAM_STATUS = "drone:stream-status"
    RECORDING_STATUS = "drone:recording-status"
    RECORDING_STOPPED = "drone:recording-stopped"
    PHOTO_CAPTURED = "drone:photo-captured"
    ERROR = "drone:error"


class BridgeCommand(str, Enum):
    """Requests accepted from the UI bridge."""

    CONNECT = "drone:connect"
    COMMAND = "drone:command"
    STREAM_TOGGLE = "drone:stream-toggle"
    RECORDING_TOGGLE = "drone:recording-toggle"
    CAPTURE_PHOTO = "drone:capture-photo"
    SHUTDOWN = "drone:shutdown"


def parse_command(name: Any) -> Optional[BridgeCommand]:
    """Return the matching :class:`BridgeCommand`, or None when unknown."""

    if isinstance(name, BridgeCommand):
        return name
    try:
        return BridgeCommand(str(name))
    except ValueError:
        return None


class EventBus:
    """Synchronous fan-out of session events to subscribers.

    Subscribers are called in registration order for every event, which keeps
    the relative order of events intact for each of them. Coroutine
    subscribers are scheduled and their failures logged.
    """

    def __init__(self) -> None:
        self._subscribers: List[EventCallback] = []
        self._published = 0

    @property
    def published_count(self) -> int:
        return self._published

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Add ``callback`` and return a function that removes it again."""

        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def publish(self, event: str, payload: Optional[Mapping[str, Any]] = None) -> None:
        name = event.value if isinstance(event, BridgeEvent) else str(event)
        body: Dict[str, Any] = dict(payload or {})
        self._published += 1
        if name != BridgeEvent.STATE_UPDATE.value:
            LOGGER.debug("Event %s %s", name, body)

        for callback in tuple(self._subscribers):
            try:
                result = callback(name, body)
            except Exception:
                LOGGER.exception("Event subscriber failed for %s", name)
                continue
            fire_and_forget(result, label=name)
