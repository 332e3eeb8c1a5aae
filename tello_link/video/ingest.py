"""UDP ingest for the raw H.264 elementary stream."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Tuple

from ..adapters.ports import reclaim_udp_port
from ..adapters.udp import UdpEndpoint, open_udp_endpoint
from ..core.errors import PortUnavailable
from ..core.protocols import VideoConsumer

LOGGER = logging.getLogger(__name__)

# Video datagrams are up to 1460 bytes and arrive in bursts per frame.
VIDEO_RECEIVE_BUFFER = 4 * 1024 * 1024

PortReclaimer = Callable[..., Awaitable[None]]


class VideoIngest:
    """Owns the bound video socket and forwards datagrams to consumers.

    Forwarding is synchronous and unbuffered. Consumers are held in a tuple
    that is replaced on every registration change, so a datagram is always
    forwarded to a consistent snapshot even if a consumer (de)registers while
    it is being delivered.
    """

    def __init__(
        self,
        port: int,
        *,
        host: str = "0.0.0.0",
        process_name: str = "ffmpeg",
        reclaim_attempts: int = 3,
        reclaim_backoff: float = 0.5,
        reclaimer: Optional[PortReclaimer] = None,
        endpoint_factory: Optional[Callable[..., Awaitable[UdpEndpoint]]] = None,
    ) -> None:
        self._port = port
        self._host = host
        self._process_name = process_name
        self._reclaim_attempts = reclaim_attempts
        self._reclaim_backoff = reclaim_backoff
        self._reclaimer = reclaimer or reclaim_udp_port
        self._endpoint_factory = endpoint_factory or open_udp_endpoint
        self._endpoint: Optional[UdpEndpoint] = None
        self._consumers: Tuple[VideoConsumer, ...] = ()
        self._datagrams = 0

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_bound(self) -> bool:
        return self._endpoint is not None

    @property
    def consumers(self) -> Tuple[VideoConsumer, ...]:
        return self._consumers

    @property
    def datagram_count(self) -> int:
        return self._datagrams

    async def start(self) -> None:
        """Reclaim and bind the video port.

        Raises:
            PortUnavailable: The port stays occupied after reclaim attempts.
        """

        if self._endpoint is not None:
            return

        await self._reclaimer(
            self._port,
            process_name=self._process_name,
            attempts=self._reclaim_attempts,
            backoff=self._reclaim_backoff,
            host=self._host,
        )
        try:
            self._endpoint = await self._endpoint_factory(
                self.forward,
                name="video",
                local_addr=(self._host, self._port),
                receive_buffer=VIDEO_RECEIVE_BUFFER,
            )
        except OSError as exc:
            raise PortUnavailable(f"Cannot bind video port {self._port}: {exc}") from exc
        self._datagrams = 0
        LOGGER.info("Video ingest bound on %s:%s", self._host, self._port)

    def stop(self) -> None:
        endpoint = self._endpoint
        self._endpoint = None
        self._consumers = ()
        if endpoint is not None:
            endpoint.close()
            LOGGER.info("Video ingest released port %s", self._port)

    def register(self, consumer: VideoConsumer) -> None:
        if consumer in self._consumers:
            return
        self._consumers = self._consumers + (consumer,)
        LOGGER.debug("Registered video consumer %s", consumer.name)

    def unregister(self, consumer: VideoConsumer) -> None:
        if consumer not in self._consumers:
            return
        self._consumers = tuple(item for item in self._consumers if item is not consumer)
        LOGGER.debug("Unregistered video consumer %s", consumer.name)

    def forward(self, data: bytes, addr: tuple = ()) -> None:
        self._datagrams += 1
        for consumer in self._consumers:
            try:
                consumer.feed(data)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Video consumer %s raised", consumer.name)
