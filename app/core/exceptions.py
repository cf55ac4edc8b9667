"""
Application error taxonomy.

Service functions raise these; `app.main` renders them as JSON responses
with the matching HTTP status code.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base class for errors that map onto an HTTP status."""
    status_code: int = 500

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra: Dict[str, Any] = extra

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, **self.extra}


class InvalidArgument(AppError):
    """Malformed action/resource name or a missing required field."""
    status_code = 400


class Unauthorized(AppError):
    """Caller is not authenticated."""
    status_code = 401

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"WWW-Authenticate": "Bearer"}


class Forbidden(AppError):
    """Caller is authenticated but the evaluator denies the action."""
    status_code = 403


class NotFound(AppError):
    """Referenced resource, permission, binding or user does not exist."""
    status_code = 404


class Conflict(AppError):
    """Duplicate binding or a delete blocked by dependents."""
    status_code = 409
