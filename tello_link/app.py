"""Main application entry-point for tello-link."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Optional

from .config import LinkConfig, load_config
from .logging import configure_logging
from .session import DroneSession

LOGGER = logging.getLogger(__name__)


class TelloLinkApp:
    """Runs one drone session until a shutdown is requested.

    Shutdown can come from SIGINT/SIGTERM or from a ``drone:shutdown`` bridge
    command; either way the session tears down recording, stream and sockets
    in order before the loop exits.
    """

    def __init__(
        self,
        config: Optional[LinkConfig] = None,
        *,
        session: Optional[DroneSession] = None,
    ) -> None:
        """Initialize the application.

        Args:
            config: Application configuration. If None, loads from default path.
            session: Session to run. If None, one is built from ``config``.
        """
        self._config = config or load_config()
        self._session = session or DroneSession(self._config)

    @property
    def session(self) -> DroneSession:
        return self._session

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        LOGGER.info("tello-link starting with config: %s", self._config.path)

        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self._session.request_shutdown)

        try:
            await self._session.start()
            LOGGER.info("tello-link active; awaiting shutdown signal")
            await self._session.wait_for_shutdown_request()
        except asyncio.CancelledError:
            LOGGER.info("tello-link received shutdown signal")
            raise
        finally:
            await self._session.shutdown()
            for signum in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.remove_signal_handler(signum)

    @classmethod
    def start(cls, config: Optional[LinkConfig] = None) -> None:
        resolved = config or load_config()
        configure_logging(
            resolved.logging.level,
            log_path=resolved.logging.path,
            log_network=resolved.logging.log_network,
        )
        instance = cls(config=resolved)
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("tello-link received shutdown signal")
