"""Contract endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from settlement_service.core.exceptions import ServiceError
from settlement_service.core.state import get_app_state
from settlement_service.routers.validation import authenticate, read_optional_body

if TYPE_CHECKING:
    from settlement_service.services.assignment_lifecycle import AssignmentLifecycle

router = APIRouter()


def _lifecycle() -> AssignmentLifecycle:
    state = get_app_state()
    if state.lifecycle is None:
        msg = "AssignmentLifecycle not initialized"
        raise RuntimeError(msg)
    return state.lifecycle


@router.get("/contracts")
async def list_contracts(request: Request) -> dict[str, Any]:
    """List contracts the caller takes part in, newest first."""
    actor = await authenticate(request)
    return {"contracts": _lifecycle().list_contracts(actor)}


@router.get("/contracts/{contract_id}")
async def get_contract(contract_id: str, request: Request) -> dict[str, Any]:
    """Read one contract."""
    actor = await authenticate(request)
    return _lifecycle().get_contract(actor, contract_id)


@router.post("/contracts/{contract_id}/cancel")
async def cancel_contract(contract_id: str, request: Request) -> JSONResponse:
    """Cancel the contract, drop the executor from the task and refund the escrow."""
    actor = await authenticate(request)
    await read_optional_body(request)
    result = await _lifecycle().cancel_contract(actor, contract_id)
    return JSONResponse(status_code=200, content=result)


@router.api_route(
    "/contracts/{contract_id}/cancel",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def cancel_method_not_allowed(contract_id: str, request: Request) -> None:
    """Reject wrong methods on /contracts/{contract_id}/cancel."""
    _ = (contract_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})


@router.post("/contracts/{contract_id}/request-revision")
async def request_revision(contract_id: str, request: Request) -> JSONResponse:
    """Send submitted work back to the executor with a message."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    result = await _lifecycle().request_revision(actor, contract_id, data.get("message"))
    return JSONResponse(status_code=200, content=result)


@router.api_route(
    "/contracts/{contract_id}/request-revision",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def request_revision_method_not_allowed(contract_id: str, request: Request) -> None:
    """Reject wrong methods on /contracts/{contract_id}/request-revision."""
    _ = (contract_id, request)
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
