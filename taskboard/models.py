"""Task entity and payload validation."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from taskboard.errors import FetchError, TaskboardError

OWNER_COLUMN = "user_id"
EDITABLE_FIELDS = {"title", "description"}


@dataclass(frozen=True)
class Task:
    """One persisted task row."""

    id: str
    title: str
    description: str | None
    is_completed: bool
    owner: str
    created_at: str

    @classmethod
    def from_row(cls, row: Any) -> "Task":
        """Build a task from a backend row, rejecting malformed rows."""
        if not isinstance(row, dict):
            raise FetchError(
                "INVALID_ROW",
                "Task row must be an object.",
                {"type": type(row).__name__},
            )
        missing = sorted(
            key
            for key in ("id", "title", OWNER_COLUMN, "created_at")
            if row.get(key) in (None, "")
        )
        if missing:
            raise FetchError(
                "INVALID_ROW",
                "Task row is missing required fields.",
                {"fields": missing},
            )
        description = row.get("description")
        if description is not None and not isinstance(description, str):
            raise FetchError(
                "INVALID_ROW",
                "description must be a string.",
                {"id": str(row["id"])},
            )
        is_completed = row.get("is_completed")
        if is_completed is None:
            is_completed = False
        if not isinstance(is_completed, bool):
            raise FetchError(
                "INVALID_ROW",
                "is_completed must be a boolean.",
                {"id": str(row["id"])},
            )
        return cls(
            id=str(row["id"]),
            title=str(row["title"]),
            description=description,
            is_completed=is_completed,
            owner=str(row[OWNER_COLUMN]),
            created_at=str(row["created_at"]),
        )

    def with_completion(self, completed: bool) -> "Task":
        return replace(self, is_completed=completed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "is_completed": self.is_completed,
            "owner": self.owner,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class TaskInput:
    """Client-supplied fields for a new task."""

    title: str
    description: str | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "is_completed": False,
        }


def _clean_title(raw_title: Any) -> str:
    if not isinstance(raw_title, str):
        raise TaskboardError(
            "INVALID_TYPE",
            "title must be a string.",
            {"title": str(raw_title)},
        )
    title = raw_title.strip()
    if not title:
        raise TaskboardError(
            "INVALID_TITLE",
            "title must not be empty.",
            {"fields": ["title"]},
        )
    return title


def _clean_description(raw_description: Any) -> str | None:
    if raw_description is None:
        return None
    if not isinstance(raw_description, str):
        raise TaskboardError(
            "INVALID_TYPE",
            "description must be a string.",
            {"description": str(raw_description)},
        )
    return raw_description.strip() or None


def build_task_input(payload: dict[str, Any]) -> TaskInput:
    """Validate a create payload into a TaskInput."""
    if "title" not in payload:
        raise TaskboardError(
            "MISSING_TITLE",
            "title is required.",
            {"fields": ["title"]},
        )
    return TaskInput(
        title=_clean_title(payload["title"]),
        description=_clean_description(payload.get("description")),
    )


def build_task_edit(fields: dict[str, Any]) -> dict[str, Any]:
    """Validate an edit payload; only title and description may change."""
    not_editable = sorted(set(fields) - EDITABLE_FIELDS)
    if not_editable:
        raise TaskboardError(
            "NOT_EDITABLE",
            "Only title and description can be edited.",
            {"fields": not_editable},
        )
    if not fields:
        raise TaskboardError(
            "MISSING_FIELDS",
            "fields must name at least one of title or description.",
            {"fields": sorted(EDITABLE_FIELDS)},
        )
    updates: dict[str, Any] = {}
    if "title" in fields:
        updates["title"] = _clean_title(fields["title"])
    if "description" in fields:
        updates["description"] = _clean_description(fields["description"])
    return updates
