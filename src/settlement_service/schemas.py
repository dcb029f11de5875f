"""Pydantic request/response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class SchedulerStatus(BaseModel):
    """Sweep scheduler section of the health response."""

    model_config = ConfigDict(extra="forbid")
    running: bool
    last_tick_at: str | None
    last_result: dict[str, object] | None


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok", "degraded"]
    uptime_seconds: float
    started_at: str
    store_ready: bool
    assignments_by_status: dict[str, int]
    contracts_by_status: dict[str, int]
    disputes_by_status: dict[str, int]
    escrows_by_status: dict[str, int]
    frozen_escrow_amount: int
    scheduler: SchedulerStatus


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]
