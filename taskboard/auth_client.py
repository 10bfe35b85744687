"""Password authentication against the hosted backend."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from taskboard.backend import _backend_headers, _backend_message
from taskboard.errors import AuthError
from taskboard.user_scope import SessionContext

logger = logging.getLogger(__name__)


def _require_credentials(email: Any, password: Any) -> tuple[str, str]:
    if not isinstance(email, str) or not email.strip():
        raise AuthError(
            "INVALID_CREDENTIALS",
            "email is required.",
            {"fields": ["email"]},
        )
    if not isinstance(password, str) or not password:
        raise AuthError(
            "INVALID_CREDENTIALS",
            "password is required.",
            {"fields": ["password"]},
        )
    return email.strip(), password


def _session_from_body(body: Any) -> SessionContext | None:
    if not isinstance(body, dict):
        return None
    access_token = body.get("access_token")
    user = body.get("user")
    if not access_token or not isinstance(user, dict) or not user.get("id"):
        return None
    return SessionContext(
        user_id=str(user["id"]),
        email=user.get("email"),
        access_token=str(access_token),
        refresh_token=body.get("refresh_token"),
    )


class AuthClient:
    """Thin async client for the backend's password auth API."""

    def __init__(self, http: httpx.AsyncClient, api_key: str) -> None:
        self._http = http
        self._api_key = api_key

    async def _call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._http.request(
                method,
                path,
                params=params,
                json=json,
                headers=_backend_headers(self._api_key, access_token),
            )
        except httpx.HTTPError as exc:
            logger.error("auth %s failed: %s", operation, exc)
            raise AuthError(
                "AUTH_UNAVAILABLE",
                "Authentication service is unreachable.",
                {"operation": operation},
            ) from exc
        if response.is_error:
            message = _backend_message(response)
            logger.info("auth %s rejected (%s): %s", operation, response.status_code, message)
            raise AuthError(
                "AUTH_REJECTED",
                message,
                {"operation": operation, "status": response.status_code},
            )
        return response

    def _json(self, operation: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            logger.error("auth %s returned invalid JSON", operation)
            raise AuthError(
                "AUTH_UNAVAILABLE",
                "Authentication service returned an unreadable response.",
                {"operation": operation, "status": response.status_code},
            ) from exc

    async def sign_in(self, email: Any, password: Any) -> SessionContext:
        email, password = _require_credentials(email, password)
        response = await self._call(
            "sign_in",
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        session = _session_from_body(self._json("sign_in", response))
        if session is None:
            raise AuthError(
                "AUTH_REJECTED",
                "Sign-in did not return a session.",
                {"operation": "sign_in"},
            )
        return session

    async def sign_up(self, email: Any, password: Any) -> SessionContext | None:
        """Register a user; None means the backend wants e-mail confirmation first."""
        email, password = _require_credentials(email, password)
        response = await self._call(
            "sign_up",
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password},
        )
        return _session_from_body(self._json("sign_up", response))

    async def sign_out(self, access_token: str) -> None:
        await self._call(
            "sign_out", "POST", "/auth/v1/logout", access_token=access_token
        )

    async def get_user(self, access_token: str) -> SessionContext:
        response = await self._call(
            "get_user", "GET", "/auth/v1/user", access_token=access_token
        )
        body = self._json("get_user", response)
        if not isinstance(body, dict) or not body.get("id"):
            raise AuthError(
                "INVALID_TOKEN",
                "Access token does not belong to a user.",
                {"operation": "get_user"},
            )
        return SessionContext(
            user_id=str(body["id"]),
            email=body.get("email"),
            access_token=access_token,
        )
