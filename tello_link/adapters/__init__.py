"""Adapter modules for sockets, ports and external processes."""

from .ffmpeg import SupervisedProcess, build_live_args, build_recording_args
from .ports import PortHolder, reclaim_udp_port
from .udp import UdpEndpoint, open_udp_endpoint

__all__ = [
    "PortHolder",
    "SupervisedProcess",
    "UdpEndpoint",
    "build_live_args",
    "build_recording_args",
    "open_udp_endpoint",
    "reclaim_udp_port",
]
