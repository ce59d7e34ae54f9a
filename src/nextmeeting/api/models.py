"""Pydantic response models for the exporter's HTTP endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class AuthSuccess(BaseModel):
    """Returned when a calendar has been authorized and its token stored."""

    success: bool = True
    calendar_id: str
    message: str = "Calendar authorized. Token stored."


class HealthResponse(BaseModel):
    status: str
    last_refresh_at: datetime | None = None
    calendars: list[str]
    failed_calendars: list[str]
    pending_refreshes: int
    dropped_refreshes: int = 0
