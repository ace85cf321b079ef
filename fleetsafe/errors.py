"""
Error taxonomy for the compliance engine.

Every failure the engine reports to a caller is a ``ComplianceError``
subclass carrying an HTTP status and a stable machine-readable code, so the
request layer can translate it without inspecting messages.
"""

from typing import Optional


class ComplianceError(Exception):
    """Base class for all structured engine errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "detail": self.message}


class Unauthorized(ComplianceError):
    """No actor identity was supplied."""
    status_code = 401
    code = "unauthorized"


class Forbidden(ComplianceError):
    """The actor's role does not allow the operation."""
    status_code = 403
    code = "forbidden"


class NotFound(ComplianceError):
    """Record missing, or outside the actor's visibility scope."""
    status_code = 404
    code = "not_found"


class InvalidStateTransition(ComplianceError):
    status_code = 409
    code = "invalid_state"

    def __init__(self, message: str = "", current: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message)
        self.current = current
        self.target = target


InvalidState = InvalidStateTransition


class ValidationError(ComplianceError):
    status_code = 422
    code = "validation_error"


class Conflict(ComplianceError):
    status_code = 409
    code = "conflict"


class CriticalFailuresBlocking(ComplianceError):
    """Approval refused: open critical failures and no valid override."""
    status_code = 409
    code = "critical_failures_blocking"

    def __init__(self, message: str = "", open_failure_ids=None):
        super().__init__(message)
        self.open_failure_ids = list(open_failure_ids or [])


class NoOpUpdate(ComplianceError):
    status_code = 400
    code = "no_op_update"


class RateLimited(ComplianceError):
    """Request budget exhausted; the caller should retry after ``retry_after`` seconds."""
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "", retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class UpstreamFailure(ComplianceError):
    status_code = 502
    code = "upstream_failure"
