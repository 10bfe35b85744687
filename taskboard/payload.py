"""Payload validation helpers for HTTP endpoints."""

from __future__ import annotations

from typing import Any

from taskboard.errors import TaskboardError


def _ensure_payload_dict(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise TaskboardError(
            "INVALID_TYPE",
            "Payload must be an object.",
            {"type": type(payload).__name__},
        )
    return payload


def _reject_unknown_fields(payload: dict[str, Any], allowed_fields: set[str]) -> None:
    unknown_fields = sorted(set(payload) - allowed_fields)
    if unknown_fields:
        raise TaskboardError(
            "UNKNOWN_FIELD",
            "Unknown fields are not allowed.",
            {"fields": unknown_fields},
        )


def _require_task_id(payload: dict[str, Any]) -> str:
    if "id" not in payload:
        raise TaskboardError(
            "MISSING_ID",
            "id is required.",
            {"fields": ["id"]},
        )
    task_id = payload["id"]
    if isinstance(task_id, bool) or not isinstance(task_id, (str, int)):
        raise TaskboardError(
            "INVALID_TYPE",
            "id must be a string.",
            {"id": str(task_id)},
        )
    task_id = str(task_id).strip()
    if not task_id:
        raise TaskboardError(
            "INVALID_TYPE",
            "id must not be empty.",
            {"fields": ["id"]},
        )
    return task_id
