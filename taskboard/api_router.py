"""Shared router that every endpoint module registers on."""

from __future__ import annotations

from fastapi import APIRouter

api_router = APIRouter()
