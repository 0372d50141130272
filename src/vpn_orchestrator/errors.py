"""Error taxonomy surfaced by the orchestrator."""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base class for orchestrator errors.

    ``code`` is a stable machine-readable identifier; the HTTP layer maps the
    exception class to a status code and echoes ``code`` to the caller.
    """

    default_code = "ORCHESTRATOR_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ValidationError(OrchestratorError):
    """Malformed input. Never retried."""

    default_code = "VALIDATION_ERROR"


class NotFoundError(OrchestratorError):
    """Unknown session, or a session owned by another user."""

    default_code = "NOT_FOUND"


class ConflictError(OrchestratorError):
    """Illegal state transition or stale version; retry after re-reading."""

    default_code = "CONFLICT"
    retryable = True

    INVALID_STATE = "INVALID_STATE"
    STALE_VERSION = "STALE_VERSION"
    ALREADY_EXISTS = "ALREADY_EXISTS"


class AdmissionError(OrchestratorError):
    """Admission rejected by the quota guard."""

    default_code = "ADMISSION_REJECTED"
    retryable = True

    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    DUPLICATE_SESSION = "DUPLICATE_SESSION"

    def __init__(self, message: str, reason: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code=reason, details=details)
        self.reason = reason


class ProviderError(OrchestratorError):
    """Upstream compute or secret-store failure.

    ``instance_ref`` carries a compute handle the provider handed out before
    failing, so the caller can still record and clean it up.
    """

    default_code = "PROVIDER_ERROR"

    TIMEOUT = "timeout"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        *,
        transient: bool = False,
        instance_ref: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.transient = transient
        self.instance_ref = instance_ref
        self.retryable = transient


class InternalError(OrchestratorError):
    """Unexpected failure, surfaced opaquely."""

    default_code = "INTERNAL_ERROR"
