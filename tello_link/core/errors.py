"""Error taxonomy for the device session layer.

Every failure the session surfaces to the UI bridge is one of these types.
Each carries a stable ``code`` so the bridge can forward it without
depending on the exception class.
"""

from __future__ import annotations

from typing import Optional


class SessionError(RuntimeError):
    """Base class for failures raised by the session layer."""

    code = "session_error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class ProtocolTimeout(SessionError):
    """The device did not answer in time."""

    code = "protocol_timeout"


class ProtocolRejected(SessionError):
    """The device answered with an error token. Never retried."""

    code = "protocol_rejected"


class MalformedResponse(SessionError):
    """The device answered with something that is neither ``ok`` nor a number."""

    code = "malformed_response"


class ProcessSpawnFailure(SessionError):
    code = "process_spawn_failure"


class ProcessCrash(SessionError):
    """A supervised child exited while it was expected to be running."""

    code = "process_crash"


class PortUnavailable(SessionError):
    code = "port_unavailable"


class PreconditionFailed(SessionError):
    code = "precondition_failed"


class FileIOFailure(SessionError):
    code = "file_io_failure"


class CaptureTimeout(ProtocolTimeout):
    """The live still frame never became available within the poll budget."""

    code = "capture_timeout"


class MediaStorageError(FileIOFailure):
    """The media root cannot be created or written."""

    code = "media_storage_error"
