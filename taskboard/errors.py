"""Structured error types for task service responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass(frozen=True)
class ErrorResponse:
    """Serializable error payload returned by HTTP handlers."""

    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class TaskboardError(RuntimeError):
    """Exception carrying a structured error response."""

    status_code = 400

    def __init__(
        self, code: str, message: str, details: Mapping[str, Any] | None = None
    ) -> None:
        super().__init__(message)
        self.error = ErrorResponse(
            code=code, message=message, details=dict(details or {})
        )


class AuthError(TaskboardError):
    """Sign-in, sign-up or session validation was rejected."""

    status_code = 401


class ForbiddenError(TaskboardError):
    """The caller is not allowed to reach the service at all."""

    status_code = 403


class FetchError(TaskboardError):
    """Bulk load of the task collection failed."""

    status_code = 502


class MutationError(TaskboardError):
    """A create, update, delete or toggle call failed."""

    status_code = 502

    def __init__(
        self, code: str, message: str, details: Mapping[str, Any] | None = None
    ) -> None:
        super().__init__(code, message, details)
        if code == "TASK_NOT_FOUND":
            self.status_code = 404


class StreamError(TaskboardError):
    """The change-notification subscription could not be established."""

    status_code = 503


def success_response(payload: dict[str, Any]) -> dict[str, Any]:
    """Wrap a successful response in the standard envelope."""
    return {"ok": True, "data": payload}


def error_response(error: ErrorResponse) -> dict[str, Any]:
    """Wrap an error response in the standard envelope."""
    return {"ok": False, "error": error.to_dict()}
