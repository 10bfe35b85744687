"""HTTP handler registration."""

# ruff: noqa: F401

from __future__ import annotations

from fastapi import FastAPI

from taskboard.api_router import api_router

# Import modules to register routes with the shared router.
from taskboard import api_auth, api_tasks

# Re-export endpoints for tests and direct imports.
from taskboard.api_auth import current_session, sign_in, sign_out, sign_up
from taskboard.api_tasks import (
    create_task,
    delete_task,
    list_tasks,
    task_live,
    toggle_task,
    update_task,
)


def register_handlers(app: FastAPI) -> None:
    """Attach task and auth routes to the FastAPI application."""
    app.include_router(api_router)
