"""Executor restriction endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from settlement_service.core.exceptions import ServiceError
from settlement_service.core.state import get_app_state
from settlement_service.routers.validation import authenticate
from settlement_service.services.actor import ARBITER, EXECUTOR
from settlement_service.services.statuses import VIOLATION_TYPES

router = APIRouter()


@router.get("/executors/{executor_id}/restriction")
async def get_restriction(executor_id: str, request: Request) -> dict[str, Any]:
    """Report whether the executor may respond to new tasks, with current violation levels."""
    actor = await authenticate(request)
    is_self = actor.role == EXECUTOR and actor.account_id == executor_id
    if not is_self and actor.role != ARBITER:
        raise ServiceError(
            "FORBIDDEN", "Restrictions are visible to the executor and arbiters", 403, {}
        )

    state = get_app_state()
    if state.sanctions is None:
        msg = "SanctionsEngine not initialized"
        raise RuntimeError(msg)

    sanctions = state.sanctions
    restriction = sanctions.get_restriction(executor_id)
    guard = sanctions.can_executor_respond(executor_id)
    return {
        **restriction,
        "can_respond": guard.to_dict(),
        "violation_levels": {
            violation_type: sanctions.violation_level(executor_id, violation_type)
            for violation_type in sorted(VIOLATION_TYPES)
        },
    }
