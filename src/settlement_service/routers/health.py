"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from settlement_service.core.state import get_app_state
from settlement_service.schemas import HealthResponse, SchedulerStatus
from settlement_service.services.statuses import ESCROW_FROZEN

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return settlement statistics."""
    state = get_app_state()
    store = state.store
    store_ready = store is not None and store.is_ready()

    assignments_by_status: dict[str, int] = {}
    contracts_by_status: dict[str, int] = {}
    disputes_by_status: dict[str, int] = {}
    escrows_by_status: dict[str, int] = {}
    frozen_escrow_amount = 0
    if store is not None and store_ready:
        assignments_by_status = store.count_by_status("assignments")
        contracts_by_status = store.count_by_status("contracts")
        disputes_by_status = store.count_by_status("disputes")
        escrows_by_status = store.count_by_status("escrows")
        frozen_escrow_amount = store.sum_escrow_amounts(ESCROW_FROZEN)

    scheduler = state.scheduler
    last_result = scheduler.last_result if scheduler is not None else None
    return HealthResponse(
        status="ok" if store_ready else "degraded",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        store_ready=store_ready,
        assignments_by_status=assignments_by_status,
        contracts_by_status=contracts_by_status,
        disputes_by_status=disputes_by_status,
        escrows_by_status=escrows_by_status,
        frozen_escrow_amount=frozen_escrow_amount,
        scheduler=SchedulerStatus(
            running=scheduler is not None and scheduler.started,
            last_tick_at=scheduler.last_tick_at if scheduler is not None else None,
            last_result=last_result.to_dict() if last_result is not None else None,
        ),
    )
