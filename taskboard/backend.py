"""Shared helpers for calls to the hosted backend."""

from __future__ import annotations

import httpx


def _backend_headers(api_key: str, access_token: str | None = None) -> dict[str, str]:
    headers = {"apikey": api_key}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


def _backend_message(response: httpx.Response) -> str:
    """Pick the most readable error message out of a backend response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    text = response.text.strip()
    return text or f"Backend responded with HTTP {response.status_code}."
