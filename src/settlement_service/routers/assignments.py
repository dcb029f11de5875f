"""Assignment lifecycle endpoints."""

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


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/assignments")
async def list_assignments(request: Request) -> dict[str, Any]:
    """List assignments the caller takes part in, most recently assigned first."""
    actor = await authenticate(request)
    assignments = _lifecycle().list_assignments(
        actor,
        task_id=request.query_params.get("task_id"),
        status=request.query_params.get("status"),
    )
    return {"assignments": assignments}


@router.get("/assignments/{assignment_id}")
async def get_assignment(assignment_id: str, request: Request) -> dict[str, Any]:
    """Read one assignment."""
    actor = await authenticate(request)
    return _lifecycle().get_assignment(actor, assignment_id)


# ---------------------------------------------------------------------------
# Executor commands
# ---------------------------------------------------------------------------


@router.post("/assignments/{assignment_id}/start")
async def start_assignment(assignment_id: str, request: Request) -> JSONResponse:
    """Start work; opens the execution window."""
    actor = await authenticate(request)
    await read_optional_body(request)
    result = await _lifecycle().start(actor, assignment_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/assignments/{assignment_id}/request-pause")
async def request_pause(assignment_id: str, request: Request) -> JSONResponse:
    """Ask the customer for a pause (once per assignment)."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    result = await _lifecycle().request_pause(
        actor,
        assignment_id,
        data.get("reason_id"),
        data.get("duration_ms"),
        data.get("comment"),
    )
    return JSONResponse(status_code=200, content=result)


@router.post("/assignments/{assignment_id}/submit")
async def submit_assignment(assignment_id: str, request: Request) -> JSONResponse:
    """Submit the work for review."""
    actor = await authenticate(request)
    await read_optional_body(request)
    result = await _lifecycle().submit(actor, assignment_id)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Customer commands
# ---------------------------------------------------------------------------


@router.post("/assignments/{assignment_id}/accept-pause")
async def accept_pause(assignment_id: str, request: Request) -> JSONResponse:
    """Accept the pending pause request and extend the deadline."""
    actor = await authenticate(request)
    await read_optional_body(request)
    result = await _lifecycle().accept_pause(actor, assignment_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/assignments/{assignment_id}/reject-pause")
async def reject_pause(assignment_id: str, request: Request) -> JSONResponse:
    """Reject the pending pause request."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    result = await _lifecycle().reject_pause(actor, assignment_id, data.get("message"))
    return JSONResponse(status_code=200, content=result)


@router.post("/assignments/{assignment_id}/accept")
async def accept_assignment(assignment_id: str, request: Request) -> JSONResponse:
    """Accept the submitted work and release the escrow to the executor."""
    actor = await authenticate(request)
    await read_optional_body(request)
    result = await _lifecycle().accept(actor, assignment_id)
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Method-not-allowed handlers for command routes. Without them GET on a
# command path would be matched by nothing and answer 404.
# ---------------------------------------------------------------------------

_COMMANDS = frozenset(
    {"start", "request-pause", "accept-pause", "reject-pause", "submit", "accept"}
)


@router.api_route(
    "/assignments/{assignment_id}/{command}",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def command_method_not_allowed(assignment_id: str, command: str, request: Request) -> None:
    """Reject wrong methods on assignment commands."""
    _ = (assignment_id, request)
    if command not in _COMMANDS:
        raise ServiceError("NOT_FOUND", "Resource not found", 404, {})
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
