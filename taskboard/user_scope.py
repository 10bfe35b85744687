"""Request-scoped session identity helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request

from taskboard.errors import AuthError, ForbiddenError

AUTHORIZATION_HEADER = "Authorization"
SERVICE_TOKEN_HEADER = "X-Taskboard-Service-Token"
SERVICE_TOKEN_QUERY_PARAM = "service_token"
AUTH_EXEMPT_PATHS = {"/health", "/auth:sign_in", "/auth:sign_up"}
# Paths that need a bearer token but must not open a task session for it.
SESSIONLESS_PATHS = {"/auth:sign_out"}


@dataclass(frozen=True)
class SessionContext:
    """Authenticated identity threaded into every store and reconciler call."""

    user_id: str
    email: str | None
    access_token: str
    refresh_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
        }


def check_service_token(expected: str | None, supplied: str | None) -> None:
    """Raise ForbiddenError when a service token is configured and not matched."""
    if expected and supplied != expected:
        raise ForbiddenError(
            "AUTH_FORBIDDEN",
            "Invalid service token.",
            {"header": SERVICE_TOKEN_HEADER},
        )


def parse_bearer_token(raw_header: str | None) -> str:
    """Extract the access token from an Authorization header value."""
    if raw_header is None or not raw_header.strip():
        raise AuthError(
            "AUTH_REQUIRED",
            "Missing required bearer token.",
            {"header": AUTHORIZATION_HEADER},
        )
    scheme, _, token = raw_header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthError(
            "INVALID_TOKEN",
            "Authorization header must use the Bearer scheme.",
            {"header": AUTHORIZATION_HEADER},
        )
    return token


def get_request_session(request: Request) -> SessionContext:
    """Read the session context resolved by the identity middleware."""
    session = getattr(request.state, "session", None)
    if not isinstance(session, SessionContext):
        raise AuthError(
            "AUTH_REQUIRED",
            "Missing required bearer token.",
            {"header": AUTHORIZATION_HEADER},
        )
    return session


def get_request_access_token(request: Request) -> str:
    """Read the bearer token the identity middleware accepted."""
    token = getattr(request.state, "access_token", None)
    if not isinstance(token, str) or not token:
        raise AuthError(
            "AUTH_REQUIRED",
            "Missing required bearer token.",
            {"header": AUTHORIZATION_HEADER},
        )
    return token


def get_request_registry(request: Request):
    """Return the session registry attached to the running application."""
    return request.app.state.registry
