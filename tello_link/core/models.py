"""Domain models shared by the session components."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import SessionError


@dataclass(slots=True)
class CommandCall:
    """A single in-flight command owned by the command transport."""

    text: str
    attempts_made: int = 0
    deadline: Optional[float] = None
    outcome: Optional["CommandResult"] = None


@dataclass(slots=True)
class CommandResult:
    """Outcome of a device command: ``Ok(response)`` or ``Fail(reason)``."""

    success: bool
    command: str
    response: Optional[str] = None
    attempts: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def ok(cls, command: str, response: str, *, attempts: int) -> "CommandResult":
        return cls(success=True, command=command, response=response, attempts=attempts)

    @classmethod
    def fail(
        cls, command: str, error: SessionError, *, attempts: int
    ) -> "CommandResult":
        return cls(
            success=False,
            command=command,
            attempts=attempts,
            error_code=error.code,
            error_message=str(error),
        )


@dataclass(slots=True)
class ActionResult:
    """Result of a coordinator operation as handed back to the UI bridge."""

    success: bool
    path: Optional[Path] = None
    data: Optional[Any] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_error(cls, error: SessionError) -> "ActionResult":
        return cls(success=False, error_code=error.code, error_message=str(error))

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.path is not None:
            payload["path"] = str(self.path)
        if self.data is not None:
            payload["data"] = self.data
        if not self.success:
            payload["error"] = {"code": self.error_code, "message": self.error_message}
        return payload


@dataclass(slots=True)
class MediaArtifact:
    """A photo or recording written once under the media root."""

    kind: str
    path: Path
    metadata: Dict[str, Any] = field(default_factory=dict)
