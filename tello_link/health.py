"""Health reporting utilities for tello-link."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks the session's component statuses for ``/healthz``.

    Components are reported by the session (``command_link``, ``telemetry``,
    ``stream``, ``recording``, ``media``, ``viewer_server``). The session
    state is kept apart from them and only degrades the overall status.
    """

    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._session: Optional[ComponentStatus] = None
        self._lock = asyncio.Lock()

    def component(self, name: str) -> Optional[ComponentStatus]:
        return self._components.get(name)

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            previous = self._components.get(name)
            if previous is not None and previous.healthy != healthy:
                LOGGER.info(
                    "Component %s is now %s (%s)",
                    name,
                    "healthy" if healthy else "unhealthy",
                    detail,
                )
            self._components[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def set_session_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            # The session entry's detail carries the state name.
            self._session = ComponentStatus(name=state, healthy=healthy, detail=detail)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._components.values()]
            session = self._session

        healthy = all(item["healthy"] for item in components)
        if session is not None and not session.healthy:
            healthy = False

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if session is not None:
            payload["sessionState"] = {
                "state": session.name,
                "healthy": session.healthy,
                "detail": session.detail,
                "updatedAt": session.updated_at.isoformat(timespec="seconds"),
            }
        return payload


HEALTH_REPORTER_KEY = web.AppKey("health_reporter", HealthReporter)


def add_health_routes(app: web.Application, reporter: HealthReporter) -> None:
    """Expose ``GET /healthz`` on ``app``: 200 when ok, 503 when degraded."""

    app[HEALTH_REPORTER_KEY] = reporter
    app.router.add_get("/healthz", handle_health)


async def handle_health(request: web.Request) -> web.Response:
    reporter = request.app[HEALTH_REPORTER_KEY]
    snapshot = await reporter.snapshot()
    status = 200 if snapshot["status"] == "ok" else 503
    return web.json_response(snapshot, status=status)
