"""
Domain errors raised by the service layer.
Each carries the HTTP status the API layer renders it with; services never
import FastAPI.
"""
from typing import Any, Optional


class FixmoError(Exception):
    status_code = 500

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(FixmoError):
    """Bad or missing input. Nothing was changed."""
    status_code = 400


class AuthorizationError(FixmoError):
    """Actor is not allowed to perform this operation on this record."""
    status_code = 403


class NotFoundError(FixmoError):
    status_code = 404


class ConflictError(FixmoError):
    """Scheduling collision or duplicate active claim. `detail` names the conflicting record."""
    status_code = 409
