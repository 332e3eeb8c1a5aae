"""UDP port hygiene: detect and reclaim ports held by orphaned transcoders."""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Callable, List, Optional

import psutil

from ..core.errors import PortUnavailable

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PortHolder:
    pid: int
    name: str


def is_udp_port_free(port: int, host: str = "0.0.0.0") -> bool:
    """Attempt a transient bind to find out whether ``port`` is available."""

    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind((host, port))
    except OSError:
        return False
    finally:
        sock.close()
    return True


def _matches(name: str, process_name: str) -> bool:
    name = name.lower()
    wanted = process_name.lower()
    return name == wanted or name == f"{wanted}.exe" or name.startswith(wanted)


def find_udp_port_holders(port: int, process_name: str) -> List[PortHolder]:
    """Return processes named like ``process_name`` bound to UDP ``port``."""

    holders: List[PortHolder] = []
    seen: set[int] = set()
    try:
        connections = psutil.net_connections(kind="udp")
    except psutil.AccessDenied:
        connections = None

    if connections is not None:
        for conn in connections:
            if not conn.laddr or conn.laddr.port != port or conn.pid is None:
                continue
            if conn.pid in seen:
                continue
            try:
                name = psutil.Process(conn.pid).name()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if _matches(name, process_name):
                seen.add(conn.pid)
                holders.append(PortHolder(pid=conn.pid, name=name))
        return holders

    # System-wide listing needs privileges on some platforms; scan candidates instead.
    for proc in psutil.process_iter(["pid", "name"]):
        name = proc.info.get("name") or ""
        if not _matches(name, process_name):
            continue
        try:
            proc_connections = proc.net_connections(kind="udp")
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if any(conn.laddr and conn.laddr.port == port for conn in proc_connections):
            holders.append(PortHolder(pid=proc.pid, name=name))
    return holders


def terminate_holders(holders: List[PortHolder], *, timeout: float = 2.0) -> int:
    """Terminate, then kill, the given processes. Returns how many were stopped."""

    processes: List[psutil.Process] = []
    for holder in holders:
        try:
            proc = psutil.Process(holder.pid)
            LOGGER.warning(
                "Terminating orphaned %s (pid %d) holding the video port",
                holder.name,
                holder.pid,
            )
            proc.terminate()
            processes.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            LOGGER.error("Not permitted to terminate pid %d", holder.pid)

    if not processes:
        return 0

    gone, alive = psutil.wait_procs(processes, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    if alive:
        psutil.wait_procs(alive, timeout=timeout)
    return len(gone) + len(alive)


async def reclaim_udp_port(
    port: int,
    *,
    process_name: str,
    attempts: int = 3,
    backoff: float = 0.5,
    host: str = "0.0.0.0",
    probe: Optional[Callable[[int], bool]] = None,
    finder: Optional[Callable[[int, str], List[PortHolder]]] = None,
    terminator: Optional[Callable[[List[PortHolder]], int]] = None,
) -> None:
    """Make sure ``port`` can be bound, reclaiming it from stale transcoders.

    Raises:
        PortUnavailable: The port is still occupied after all attempts.
    """

    probe = probe or (lambda value: is_udp_port_free(value, host))
    finder = finder or find_udp_port_holders
    terminator = terminator or terminate_holders

    for attempt in range(1, max(1, attempts) + 1):
        if probe(port):
            return

        holders = await asyncio.to_thread(finder, port, process_name)
        if holders:
            await asyncio.to_thread(terminator, holders)
        else:
            LOGGER.warning(
                "UDP port %d is in use by a process other than %s (attempt %d/%d)",
                port,
                process_name,
                attempt,
                attempts,
            )

        await asyncio.sleep(backoff * attempt)

    if probe(port):
        return
    raise PortUnavailable(f"UDP port {port} is still in use after {attempts} attempts")
