"""Authentication endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import Request

from taskboard.api_router import api_router
from taskboard.errors import success_response
from taskboard.payload import _ensure_payload_dict, _reject_unknown_fields
from taskboard.user_scope import (
    get_request_access_token,
    get_request_registry,
    get_request_session,
)


@api_router.post("/auth:sign_in")
async def sign_in(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    """Sign in with email and password and open a task session."""
    payload = _ensure_payload_dict(payload)
    _reject_unknown_fields(payload, {"email", "password"})

    registry = get_request_registry(request)
    session = await registry.sign_in(payload.get("email"), payload.get("password"))
    return success_response({"session": session.context.to_dict()})


@api_router.post("/auth:sign_up")
async def sign_up(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    """Register a user; the session is null until the e-mail is confirmed."""
    payload = _ensure_payload_dict(payload)
    _reject_unknown_fields(payload, {"email", "password"})

    registry = get_request_registry(request)
    session = await registry.sign_up(payload.get("email"), payload.get("password"))
    return success_response(
        {
            "session": None if session is None else session.context.to_dict(),
            "confirmationRequired": session is None,
        }
    )


@api_router.post("/auth:sign_out")
async def sign_out(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    payload = _ensure_payload_dict(payload)
    _reject_unknown_fields(payload, set())

    access_token = get_request_access_token(request)
    await get_request_registry(request).sign_out(access_token)
    return success_response({"signedOut": True})


@api_router.get("/auth:session")
async def current_session(request: Request) -> dict[str, Any]:
    context = get_request_session(request)
    current = get_request_registry(request).current(context.access_token)
    return success_response(
        {"session": None if current is None else current.to_dict()}
    )
