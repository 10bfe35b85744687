"""Task endpoints and the live task feed."""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import Request, WebSocket, WebSocketDisconnect

from taskboard.api_router import api_router
from taskboard.errors import AuthError, ForbiddenError, TaskboardError, success_response
from taskboard.models import build_task_edit, build_task_input
from taskboard.payload import (
    _ensure_payload_dict,
    _reject_unknown_fields,
    _require_task_id,
)
from taskboard.reconciler import ReconcilerState
from taskboard.sessions import TaskSession
from taskboard.user_scope import (
    AUTHORIZATION_HEADER,
    SERVICE_TOKEN_HEADER,
    SERVICE_TOKEN_QUERY_PARAM,
    check_service_token,
    parse_bearer_token,
)

LIVE_UNAUTHORIZED_CLOSE_CODE = 4401
LIVE_FORBIDDEN_CLOSE_CODE = 4403
LIVE_SESSION_ENDED_CLOSE_CODE = 1001


def get_request_task_session(request: Request) -> TaskSession:
    session = getattr(request.state, "task_session", None)
    if not isinstance(session, TaskSession):
        raise AuthError(
            "AUTH_REQUIRED",
            "Missing required bearer token.",
            {"header": AUTHORIZATION_HEADER},
        )
    return session


@api_router.post("/task:list")
async def list_tasks(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    """List the session's tasks, newest first; refresh re-runs the bulk load."""
    payload = _ensure_payload_dict(payload)
    _reject_unknown_fields(payload, {"refresh"})

    refresh = payload.get("refresh", False)
    if not isinstance(refresh, bool):
        raise TaskboardError(
            "INVALID_TYPE",
            "refresh must be a boolean.",
            {"refresh": str(refresh)},
        )

    session = get_request_task_session(request)
    reconciler = session.reconciler
    if refresh or reconciler.state is ReconcilerState.UNINITIALIZED:
        await session.refresh()
    return success_response(
        {
            "tasks": [task.to_dict() for task in reconciler.tasks],
            "state": reconciler.state.value,
            "live": session.live,
        }
    )


@api_router.post("/task:create")
async def create_task(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    """Create a task owned by the signed-in user."""
    payload = _ensure_payload_dict(payload)
    _reject_unknown_fields(payload, {"title", "description"})

    task_input = build_task_input(payload)
    task = await get_request_task_session(request).create(task_input)
    return success_response({"task": task.to_dict()})


@api_router.post("/task:update")
async def update_task(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    """Edit a task's title or description."""
    payload = _ensure_payload_dict(payload)
    _reject_unknown_fields(payload, {"id", "fields"})

    if "id" not in payload or "fields" not in payload:
        raise TaskboardError(
            "MISSING_FIELDS",
            "id and fields are required.",
            {"fields": ["id", "fields"]},
        )
    task_id = _require_task_id(payload)
    fields = payload["fields"]
    if not isinstance(fields, dict):
        raise TaskboardError(
            "INVALID_TYPE",
            "fields must be an object.",
            {"fields": str(fields)},
        )

    updates = build_task_edit(fields)
    task = await get_request_task_session(request).edit(task_id, updates)
    return success_response({"task": task.to_dict()})


@api_router.post("/task:toggle")
async def toggle_task(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    """Set a task's completion flag."""
    payload = _ensure_payload_dict(payload)
    _reject_unknown_fields(payload, {"id", "is_completed"})

    task_id = _require_task_id(payload)
    completed = payload.get("is_completed")
    if not isinstance(completed, bool):
        raise TaskboardError(
            "INVALID_TYPE",
            "is_completed must be a boolean.",
            {"is_completed": str(completed)},
        )

    task = await get_request_task_session(request).toggle(task_id, completed)
    return success_response({"task": task.to_dict()})


@api_router.post("/task:delete")
async def delete_task(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    payload = _ensure_payload_dict(payload)
    _reject_unknown_fields(payload, {"id"})

    task_id = _require_task_id(payload)
    await get_request_task_session(request).delete(task_id)
    return success_response({"id": task_id})


async def _drain_until_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@api_router.websocket("/task:live")
async def task_live(websocket: WebSocket) -> None:
    """Push the session's task list on connect and after every change."""
    config = websocket.app.state.config
    try:
        check_service_token(
            config.service_token,
            websocket.headers.get(SERVICE_TOKEN_HEADER)
            or websocket.query_params.get(SERVICE_TOKEN_QUERY_PARAM),
        )
    except ForbiddenError:
        await websocket.close(code=LIVE_FORBIDDEN_CLOSE_CODE)
        return

    token = websocket.query_params.get("access_token")
    try:
        if not token:
            token = parse_bearer_token(websocket.headers.get(AUTHORIZATION_HEADER))
        session = await websocket.app.state.registry.resolve(token)
    except AuthError:
        await websocket.close(code=LIVE_UNAUTHORIZED_CLOSE_CODE)
        return

    await websocket.accept()
    updates = session.reconciler.watch()
    receiver = asyncio.create_task(_drain_until_disconnect(websocket))
    closer = asyncio.create_task(session.wait_closed())
    try:
        while True:
            getter = asyncio.create_task(updates.get())
            done, _ = await asyncio.wait(
                {getter, receiver, closer}, return_when=asyncio.FIRST_COMPLETED
            )
            if getter not in done:
                getter.cancel()
                if closer in done:
                    await websocket.close(
                        code=LIVE_UNAUTHORIZED_CLOSE_CODE
                        if session.expired
                        else LIVE_SESSION_ENDED_CLOSE_CODE
                    )
                break
            tasks = getter.result()
            await websocket.send_json(
                {"type": "tasks", "tasks": [task.to_dict() for task in tasks]}
            )
    except WebSocketDisconnect:
        pass
    finally:
        session.reconciler.unwatch(updates)
        session.touch()
        receiver.cancel()
        closer.cancel()
