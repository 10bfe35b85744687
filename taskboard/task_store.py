"""Remote task store backed by the hosted backend's REST data API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from taskboard.backend import _backend_headers, _backend_message
from taskboard.errors import FetchError, MutationError, TaskboardError
from taskboard.models import OWNER_COLUMN, Task, TaskInput
from taskboard.user_scope import SessionContext

logger = logging.getLogger(__name__)


class RemoteTaskStore:
    """List, insert, update and delete task rows owned by the session user."""

    def __init__(self, http: httpx.AsyncClient, api_key: str, table: str = "tasks") -> None:
        self._http = http
        self._api_key = api_key
        self.table = table

    @property
    def _path(self) -> str:
        return f"/rest/v1/{self.table}"

    def _headers(self, session: SessionContext, *, returning: bool) -> dict[str, str]:
        headers = _backend_headers(self._api_key, session.access_token)
        if returning:
            headers["Prefer"] = "return=representation"
        return headers

    def _owned_row(self, session: SessionContext, task_id: str) -> dict[str, str]:
        return {"id": f"eq.{task_id}", OWNER_COLUMN: f"eq.{session.user_id}"}

    async def _request(
        self,
        operation: str,
        error_type: type[TaskboardError],
        method: str,
        *,
        session: SessionContext,
        params: dict[str, str],
        json: Any = None,
        returning: bool = False,
    ) -> httpx.Response:
        try:
            response = await self._http.request(
                method,
                self._path,
                params=params,
                json=json,
                headers=self._headers(session, returning=returning),
            )
        except httpx.HTTPError as exc:
            logger.error("store %s failed: %s", operation, exc)
            raise error_type(
                "BACKEND_UNAVAILABLE",
                "Task store is unreachable.",
                {"operation": operation},
            ) from exc
        if response.is_error:
            message = _backend_message(response)
            logger.error(
                "store %s rejected (%s): %s", operation, response.status_code, message
            )
            raise error_type(
                "BACKEND_ERROR",
                message,
                {"operation": operation, "status": response.status_code},
            )
        return response

    def _rows(
        self, operation: str, error_type: type[TaskboardError], response: httpx.Response
    ) -> list[Task]:
        try:
            body = response.json()
        except ValueError as exc:
            raise error_type(
                "BACKEND_ERROR",
                "Task store returned invalid JSON.",
                {"operation": operation},
            ) from exc
        if not isinstance(body, list):
            raise error_type(
                "BACKEND_ERROR",
                "Task store returned an unexpected payload.",
                {"operation": operation, "type": type(body).__name__},
            )
        try:
            return [Task.from_row(row) for row in body]
        except FetchError as exc:
            if error_type is FetchError:
                raise
            raise error_type(
                exc.error.code, exc.error.message, exc.error.details
            ) from exc

    async def list(self, session: SessionContext) -> list[Task]:
        """Return the session user's tasks, newest first."""
        response = await self._request(
            "list",
            FetchError,
            "GET",
            session=session,
            params={
                "select": "*",
                OWNER_COLUMN: f"eq.{session.user_id}",
                "order": "created_at.desc",
            },
        )
        return self._rows("list", FetchError, response)

    async def insert(self, session: SessionContext, task_input: TaskInput) -> Task:
        response = await self._request(
            "insert",
            MutationError,
            "POST",
            session=session,
            params={"select": "*"},
            json=task_input.to_row(),
            returning=True,
        )
        rows = self._rows("insert", MutationError, response)
        if not rows:
            raise MutationError(
                "BACKEND_ERROR",
                "Task store did not return the created task.",
                {"operation": "insert"},
            )
        return rows[0]

    async def update(
        self, session: SessionContext, task_id: str, fields: dict[str, Any]
    ) -> Task:
        response = await self._request(
            "update",
            MutationError,
            "PATCH",
            session=session,
            params={**self._owned_row(session, task_id), "select": "*"},
            json=fields,
            returning=True,
        )
        rows = self._rows("update", MutationError, response)
        if not rows:
            raise MutationError(
                "TASK_NOT_FOUND",
                "Task ID not found.",
                {"id": task_id},
            )
        return rows[0]

    async def delete(self, session: SessionContext, task_id: str) -> None:
        await self._request(
            "delete",
            MutationError,
            "DELETE",
            session=session,
            params=self._owned_row(session, task_id),
        )
