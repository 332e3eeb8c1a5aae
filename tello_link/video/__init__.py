"""Video pipeline: ingest, live transcode, fan-out, recording and stills."""

from .broadcaster import StreamBroadcaster, ViewerConnection
from .ingest import VideoIngest
from .photo import PhotoCapture, PhotoResult
from .recording import RecordingBranch, RecordingState
from .transcoder import StreamState, StreamSupervisor

__all__ = [
    "PhotoCapture",
    "PhotoResult",
    "RecordingBranch",
    "RecordingState",
    "StreamBroadcaster",
    "StreamState",
    "StreamSupervisor",
    "VideoIngest",
    "ViewerConnection",
]
