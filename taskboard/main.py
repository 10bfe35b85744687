"""FastAPI entrypoint for the task service."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any, Callable

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from taskboard.api import register_handlers
from taskboard.auth_client import AuthClient
from taskboard.config import load_config
from taskboard.errors import AuthError, ForbiddenError, TaskboardError, error_response
from taskboard.logging_setup import setup_logging
from taskboard.realtime import RealtimeClient
from taskboard.sessions import SessionRegistry
from taskboard.task_store import RemoteTaskStore
from taskboard.user_scope import (
    AUTH_EXEMPT_PATHS,
    AUTHORIZATION_HEADER,
    SERVICE_TOKEN_HEADER,
    SESSIONLESS_PATHS,
    check_service_token,
    parse_bearer_token,
)

REAPER_INTERVAL = 60.0


def create_app(
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    realtime_connect: Callable[[str], Any] | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = load_config()
        setup_logging(config.log_level)
        http = httpx.AsyncClient(
            base_url=config.backend_url,
            timeout=config.request_timeout,
            transport=transport,
        )
        realtime = None
        if config.realtime_enabled:
            realtime = RealtimeClient(
                config.backend_url, config.backend_key, connect=realtime_connect
            )
        app.state.config = config
        app.state.registry = SessionRegistry(
            AuthClient(http, config.backend_key),
            RemoteTaskStore(http, config.backend_key, config.tasks_table),
            realtime,
        )
        reaper = asyncio.create_task(
            app.state.registry.run_reaper(
                config.session_idle_timeout,
                min(config.session_idle_timeout, REAPER_INTERVAL),
            )
        )
        try:
            yield
        finally:
            reaper.cancel()
            with suppress(asyncio.CancelledError):
                await reaper
            await app.state.registry.close_all()
            await http.aclose()

    app = FastAPI(lifespan=lifespan)

    @app.middleware("http")
    async def enforce_request_identity(request: Request, call_next):
        path = request.url.path
        if path in AUTH_EXEMPT_PATHS:
            return await call_next(request)

        config = getattr(request.app.state, "config", None)
        try:
            check_service_token(
                getattr(config, "service_token", None),
                request.headers.get(SERVICE_TOKEN_HEADER),
            )
        except ForbiddenError as exc:
            return JSONResponse(status_code=403, content=error_response(exc.error))

        try:
            access_token = parse_bearer_token(
                request.headers.get(AUTHORIZATION_HEADER)
            )
        except AuthError as exc:
            return JSONResponse(status_code=401, content=error_response(exc.error))

        request.state.access_token = access_token
        if path in SESSIONLESS_PATHS:
            return await call_next(request)

        try:
            session = await request.app.state.registry.resolve(access_token)
        except AuthError as exc:
            return JSONResponse(status_code=401, content=error_response(exc.error))

        request.state.session = session.context
        request.state.task_session = session
        return await call_next(request)

    @app.exception_handler(TaskboardError)
    def handle_taskboard_error(request: Request, exc: TaskboardError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code, content=error_response(exc.error)
        )

    @app.get("/health", status_code=200)
    def health() -> dict[str, str]:
        return {"status": "ok"}

    register_handlers(app)
    return app


app = create_app()
