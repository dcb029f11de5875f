"""Dispute endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from settlement_service.core.exceptions import ServiceError
from settlement_service.core.state import get_app_state
from settlement_service.routers.validation import authenticate, read_optional_body

if TYPE_CHECKING:
    from settlement_service.services.dispute_service import DisputeService

router = APIRouter()


def _disputes() -> DisputeService:
    state = get_app_state()
    if state.disputes is None:
        msg = "DisputeService not initialized"
        raise RuntimeError(msg)
    return state.disputes


# ---------------------------------------------------------------------------
# Open and read
# ---------------------------------------------------------------------------


@router.post("/disputes", status_code=201)
async def open_dispute(request: Request) -> JSONResponse:
    """Open a dispute; 201 when created, 200 when the contract already had one."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    dispute, created = await _disputes().open_dispute(
        actor, data.get("contract_id"), data.get("reason")
    )
    return JSONResponse(status_code=201 if created else 200, content=dispute)


@router.get("/disputes")
async def list_disputes(request: Request) -> dict[str, Any]:
    """List disputes visible to the caller."""
    actor = await authenticate(request)
    disputes = _disputes().list_disputes(
        actor,
        status=request.query_params.get("status"),
        contract_id=request.query_params.get("contract_id"),
    )
    return {"disputes": disputes}


@router.get("/disputes/{dispute_id}")
async def get_dispute(dispute_id: str, request: Request) -> dict[str, Any]:
    """Read one dispute."""
    actor = await authenticate(request)
    return _disputes().get_dispute(actor, dispute_id)


# ---------------------------------------------------------------------------
# Message thread
# ---------------------------------------------------------------------------


@router.get("/disputes/{dispute_id}/messages")
async def list_messages(dispute_id: str, request: Request) -> dict[str, Any]:
    """Read the dispute's message thread, oldest first."""
    actor = await authenticate(request)
    return {"messages": _disputes().list_messages(actor, dispute_id)}


@router.post("/disputes/{dispute_id}/messages", status_code=201)
async def post_message(dispute_id: str, request: Request) -> JSONResponse:
    """Append a message to the thread."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    message = await _disputes().post_message(
        actor, dispute_id, data.get("text"), data.get("kind")
    )
    return JSONResponse(status_code=201, content=message)


# ---------------------------------------------------------------------------
# Arbiter commands
# ---------------------------------------------------------------------------


@router.post("/disputes/{dispute_id}/take-in-work")
async def take_in_work(dispute_id: str, request: Request) -> JSONResponse:
    """Claim the dispute for review."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    result = await _disputes().take_in_work(actor, dispute_id, data.get("expected_version"))
    return JSONResponse(status_code=200, content=result)


@router.post("/disputes/{dispute_id}/request-more-info")
async def request_more_info(dispute_id: str, request: Request) -> JSONResponse:
    """Ask the parties for more information."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    result = await _disputes().request_more_info(
        actor, dispute_id, data.get("expected_version")
    )
    return JSONResponse(status_code=200, content=result)


@router.post("/disputes/{dispute_id}/decide")
async def decide(dispute_id: str, request: Request) -> JSONResponse:
    """Lock a decision and settle the escrow."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    result = await _disputes().decide(
        actor, dispute_id, data.get("decision"), data.get("expected_version")
    )
    return JSONResponse(status_code=200, content=result)


@router.post("/disputes/{dispute_id}/close")
async def close(dispute_id: str, request: Request) -> JSONResponse:
    """Close the dispute."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    result = await _disputes().close(actor, dispute_id, data.get("expected_version"))
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Method-not-allowed handlers for command routes.
# ---------------------------------------------------------------------------

_COMMANDS = frozenset({"take-in-work", "request-more-info", "decide", "close", "messages"})


@router.api_route(
    "/disputes",
    methods=["PUT", "PATCH", "DELETE"],
)
async def disputes_method_not_allowed(request: Request) -> None:
    """Reject wrong methods on /disputes."""
    _ = request
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})


@router.api_route(
    "/disputes/{dispute_id}/{command}",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def command_method_not_allowed(dispute_id: str, command: str, request: Request) -> None:
    """Reject wrong methods on dispute commands."""
    _ = (dispute_id, request)
    if command not in _COMMANDS:
        raise ServiceError("NOT_FOUND", "Resource not found", 404, {})
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
