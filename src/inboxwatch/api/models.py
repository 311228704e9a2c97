"""Pydantic models for the HTTP surface."""

from __future__ import annotations

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Error body shared by every route.

    ``error`` stays a plain message string, the shape push callers already
    parse; ``code`` is a stable machine-readable label next to it.
    """

    error: str
    code: str
    server: str | None = None


class WatchResponse(BaseModel):
    """Result of ``POST /watch``."""

    server: str
    topic_name: str
    history_id: str
    expiration: str | None = None


class HealthResponse(BaseModel):
    status: str = "ok"
