"""Telemetry decoding for the Tello state push stream.

The device pushes datagrams such as
``pitch:0;roll:0;yaw:0;vgx:0;vgy:0;vgz:0;templ:60;temph:62;tof:10;h:0;bat:85;baro:12.34;time:0;agx:-1.00;agy:0.00;agz:-999.00;``
to the local telemetry port several times per second.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from .adapters.udp import UdpEndpoint, open_udp_endpoint

LOGGER = logging.getLogger(__name__)

# Fixed field table; unknown keys are never added to the snapshot.
FIELD_TYPES: Mapping[str, type] = {
    "pitch": int,
    "roll": int,
    "yaw": int,
    "vgx": int,
    "vgy": int,
    "vgz": int,
    "templ": int,
    "temph": int,
    "tof": int,
    "h": int,
    "bat": int,
    "baro": float,
    "time": int,
    "agx": float,
    "agy": float,
    "agz": float,
}


@dataclass(frozen=True, slots=True)
class TelemetrySnapshot:
    """Immutable view of the last accepted telemetry update."""

    pitch: Optional[int] = None
    roll: Optional[int] = None
    yaw: Optional[int] = None
    vgx: Optional[int] = None
    vgy: Optional[int] = None
    vgz: Optional[int] = None
    templ: Optional[int] = None
    temph: Optional[int] = None
    tof: Optional[int] = None
    h: Optional[int] = None
    bat: Optional[int] = None
    baro: Optional[float] = None
    time: Optional[int] = None
    agx: Optional[float] = None
    agy: Optional[float] = None
    agz: Optional[float] = None
    observed_at: Optional[datetime] = None

    def fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in FIELD_TYPES}

    def as_dict(self) -> Dict[str, Any]:
        payload = self.fields()
        payload["observedAt"] = (
            self.observed_at.isoformat(timespec="milliseconds")
            if self.observed_at
            else None
        )
        return payload


def _coerce(key: str, value: str) -> Optional[Any]:
    kind = FIELD_TYPES[key]
    try:
        if kind is int:
            # Some firmware revisions report integers with a decimal part.
            return int(float(value)) if "." in value else int(value)
        return float(value)
    except ValueError:
        return None


def parse_telemetry(text: str) -> Dict[str, Any]:
    """Parse recognized ``key:value`` pairs; everything else is skipped."""

    values: Dict[str, Any] = {}
    for segment in text.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        key, sep, raw_value = segment.partition(":")
        key = key.strip()
        raw_value = raw_value.strip()
        if not sep or key not in FIELD_TYPES or not raw_value:
            continue
        coerced = _coerce(key, raw_value)
        if coerced is not None:
            values[key] = coerced
    return values


class TelemetryDecoder:
    """Turns raw state datagrams into rate-limited snapshots.

    An update is applied only if at least ``min_interval`` seconds have
    passed since the previous applied update and at least one recognized
    field changed. Anything else is dropped silently.
    """

    def __init__(
        self,
        *,
        min_interval: float = 0.1,
        monotonic: Optional[Callable[[], float]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._min_interval = max(0.0, min_interval)
        self._monotonic = monotonic or time.monotonic
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._snapshot = TelemetrySnapshot()
        self._last_applied: Optional[float] = None
        self._dropped = 0

    @property
    def snapshot(self) -> TelemetrySnapshot:
        return self._snapshot

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def on_raw_telemetry(self, raw: Any) -> Optional[TelemetrySnapshot]:
        if isinstance(raw, (bytes, bytearray)):
            text = bytes(raw).decode("ascii", errors="ignore")
        elif isinstance(raw, str):
            text = raw
        else:
            self._dropped += 1
            return None

        text = text.replace("\0", "").strip()
        if not text:
            self._dropped += 1
            return None

        now = self._monotonic()
        if self._last_applied is not None and now - self._last_applied < self._min_interval:
            self._dropped += 1
            return None

        values = parse_telemetry(text)
        current = self._snapshot
        changes = {
            key: value for key, value in values.items() if getattr(current, key) != value
        }
        if not changes:
            self._dropped += 1
            return None

        self._snapshot = dataclasses.replace(
            current, observed_at=self._clock(), **changes
        )
        self._last_applied = now
        return self._snapshot


SnapshotCallback = Callable[[TelemetrySnapshot], Any]
ActivityCallback = Callable[[], Any]


class TelemetryListener:
    """Binds the telemetry port and feeds datagrams to a decoder."""

    def __init__(
        self,
        decoder: TelemetryDecoder,
        port: int,
        *,
        on_snapshot: SnapshotCallback,
        on_activity: Optional[ActivityCallback] = None,
        host: str = "0.0.0.0",
    ) -> None:
        self._decoder = decoder
        self._port = port
        self._host = host
        self._on_snapshot = on_snapshot
        self._on_activity = on_activity
        self._endpoint: Optional[UdpEndpoint] = None

    @property
    def is_listening(self) -> bool:
        return self._endpoint is not None and self._endpoint.is_open

    async def start(self) -> None:
        if self._endpoint is not None:
            return
        self._endpoint = await open_udp_endpoint(
            self.handle_datagram, name="telemetry", local_addr=(self._host, self._port)
        )
        LOGGER.info("Listening for telemetry on %s:%s", self._host, self._port)

    def stop(self) -> None:
        if self._endpoint is not None:
            self._endpoint.close()
            self._endpoint = None

    def handle_datagram(self, data: bytes, addr: tuple = ()) -> None:
        if self._on_activity is not None:
            self._on_activity()
        try:
            snapshot = self._decoder.on_raw_telemetry(data)
        except Exception:  # pragma: no cover - telemetry must never surface
            LOGGER.debug("Telemetry decode failed", exc_info=True)
            return
        if snapshot is not None:
            self._on_snapshot(snapshot)
