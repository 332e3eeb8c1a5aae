"""Core primitives for tello-link."""

from .errors import (
    CaptureTimeout,
    FileIOFailure,
    MalformedResponse,
    MediaStorageError,
    PortUnavailable,
    PreconditionFailed,
    ProcessCrash,
    ProcessSpawnFailure,
    ProtocolRejected,
    ProtocolTimeout,
    SessionError,
)
from .models import ActionResult, CommandCall, CommandResult, MediaArtifact
from .protocols import (
    DatagramEndpoint,
    EventCallback,
    EventSink,
    ProcessLauncher,
    VideoConsumer,
)
from .utils import fire_and_forget

__all__ = [
    "ActionResult",
    "CaptureTimeout",
    "CommandCall",
    "CommandResult",
    "DatagramEndpoint",
    "EventCallback",
    "EventSink",
    "FileIOFailure",
    "MalformedResponse",
    "MediaArtifact",
    "MediaStorageError",
    "PortUnavailable",
    "PreconditionFailed",
    "ProcessCrash",
    "ProcessLauncher",
    "ProcessSpawnFailure",
    "ProtocolRejected",
    "ProtocolTimeout",
    "SessionError",
    "VideoConsumer",
    "fire_and_forget",
]
