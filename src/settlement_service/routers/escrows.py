"""Escrow read endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from settlement_service.core.exceptions import ServiceError
from settlement_service.core.state import get_app_state
from settlement_service.routers.validation import authenticate
from settlement_service.services.actor import ARBITER

router = APIRouter()


@router.get("/escrows/{task_id}/{executor_id}")
async def get_escrow(task_id: str, executor_id: str, request: Request) -> dict[str, Any]:
    """Read the escrow of a task/executor pair; visible to its parties and arbiters."""
    actor = await authenticate(request)

    state = get_app_state()
    if state.escrow is None:
        msg = "EscrowLedger not initialized"
        raise RuntimeError(msg)

    escrow = state.escrow.get(task_id, executor_id)
    if escrow is None:
        raise ServiceError(
            "ESCROW_NOT_FOUND",
            "No escrow exists for this task and executor",
            404,
            {"task_id": task_id, "executor_id": executor_id},
        )
    if actor.role != ARBITER and actor.account_id not in (
        escrow["customer_id"],
        escrow["executor_id"],
    ):
        raise ServiceError("FORBIDDEN", "Escrow is not visible to this account", 403, {})
    return escrow
