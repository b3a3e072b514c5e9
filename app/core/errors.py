"""
Authorization error taxonomy.

Every error carries the HTTP status it maps to and a public ``detail`` that is
safe to show to any caller. Underlying causes (driver errors, connection
strings) are chained with ``raise ... from`` and only ever logged.
"""
from typing import Any, Dict, Optional


class AuthorizationError(Exception):
    """Base class for errors surfaced by the authorization engine."""

    status_code: int = 500
    code: str = "error"
    default_detail: str = "Request could not be completed"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.detail}


class Unauthorized(AuthorizationError):
    """No valid session."""
    status_code = 401
    code = "unauthorized"
    default_detail = "Not authenticated"


class Forbidden(AuthorizationError):
    """Valid session, but insufficient privilege or system-role protection."""
    status_code = 403
    code = "forbidden"
    default_detail = "Not permitted"


class Conflict(AuthorizationError):
    """Duplicate role name, or deletion blocked by existing references."""
    status_code = 409
    code = "conflict"
    default_detail = "Conflicting state"

    def __init__(self, detail: Optional[str] = None, *, count: int):
        super().__init__(detail)
        self.count = count

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["count"] = self.count
        return body


class NotFound(AuthorizationError):
    status_code = 404
    code = "not_found"
    default_detail = "Not found"


class InvalidInput(AuthorizationError):
    status_code = 422
    code = "invalid_input"
    default_detail = "Invalid input"


class EvaluatorUnavailable(AuthorizationError):
    """Backing store unreachable while reading authorization state."""
    status_code = 503
    code = "evaluator_unavailable"
    default_detail = "Authorization service unavailable"


class StoreFailure(AuthorizationError):
    """Backing store unreachable while writing authorization state."""
    status_code = 503
    code = "store_failure"
    default_detail = "Authorization store unavailable"


class AuditEntryImmutable(AuthorizationError):
    status_code = 500
    code = "audit_immutable"
    default_detail = "Audit entries cannot be modified"
