"""RagMem Errors -- typed failures surfaced to MCP callers.

Every error carries a stable ``code`` so handlers can report
``[<code>] <message>`` without inspecting exception classes.
"""

from typing import Any, Dict, List, Optional


class RagMemError(Exception):
    """Base class for every error raised by ragmem operations."""

    code = "internal"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(RagMemError):
    """Malformed or missing parameters (e.g. overlap >= maxTokens)."""

    code = "validation"


class NotFoundError(RagMemError):
    """A strict operation referenced a missing entity, document or chunk."""

    code = "not_found"

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message, {"missing": list(missing)} if missing else None)
        self.missing = list(missing or [])


class ConflictError(RagMemError):
    """Duplicate definition, e.g. two migrations registered with one version."""

    code = "conflict"


class BackendConnectionError(RagMemError):
    """The storage backend is unreachable."""

    code = "connection"


class ConnectionClosedError(BackendConnectionError):
    """The backend handle was torn down while an operation was using it."""

    code = "connection_closed"


class MigrationError(RagMemError):
    """Fatal schema migration failure. Halts startup or a database switch."""

    code = "migration"

    def __init__(self, message: str, version: Optional[int] = None):
        super().__init__(message, {"version": version} if version is not None else None)
        self.version = version


class SwitchFailure(RagMemError):
    """A database switch failed and the previous database was restored."""

    code = "switch_failed"

    def __init__(self, message: str, active_database: Optional[str] = None):
        super().__init__(message, {"activeDatabase": active_database})
        self.active_database = active_database


class SwitchFatal(RagMemError):
    """A database switch failed and the previous database could not be reopened."""

    code = "switch_fatal"


class AlreadySwitchingError(RagMemError):
    """A switch was requested while another switch is in flight."""

    code = "already_switching"


class NotReadyError(RagMemError):
    """The embedding model did not become ready within the readiness timeout."""

    code = "not_ready"
