"""Task projection, executor selection and pair-addressed pause endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from settlement_service.core.exceptions import ServiceError
from settlement_service.core.state import get_app_state
from settlement_service.routers.validation import authenticate, read_optional_body

if TYPE_CHECKING:
    from settlement_service.services.assignment_lifecycle import AssignmentLifecycle
    from settlement_service.services.task_registry import TaskRegistry

router = APIRouter()


def _registry() -> TaskRegistry:
    state = get_app_state()
    if state.registry is None:
        msg = "TaskRegistry not initialized"
        raise RuntimeError(msg)
    return state.registry


def _lifecycle() -> AssignmentLifecycle:
    state = get_app_state()
    if state.lifecycle is None:
        msg = "AssignmentLifecycle not initialized"
        raise RuntimeError(msg)
    return state.lifecycle


# ---------------------------------------------------------------------------
# Task projection
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def register_task(request: Request) -> JSONResponse:
    """Register a task with its budget and executor slots."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    task = _registry().register_task(actor, data)
    return JSONResponse(status_code=201, content=task)


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request) -> dict[str, Any]:
    """Read the task projection."""
    actor = await authenticate(request)
    return _registry().get_task(actor, task_id)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/assignments")
async def select_executor(task_id: str, request: Request) -> JSONResponse:
    """Select an executor; 201 on first selection, 200 when already selected."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    assignment, created = await _registry().select_executor(
        actor, task_id, data.get("executor_id")
    )
    return JSONResponse(status_code=201 if created else 200, content=assignment)


@router.get("/tasks/{task_id}/assignments")
async def list_task_assignments(task_id: str, request: Request) -> dict[str, Any]:
    """List the task's assignments visible to the caller."""
    actor = await authenticate(request)
    _registry().get_task(actor, task_id)
    assignments = _lifecycle().list_assignments(
        actor, task_id=task_id, status=request.query_params.get("status")
    )
    return {"assignments": assignments}


# ---------------------------------------------------------------------------
# Pause commands addressed by (task_id, executor_id)
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/assignments/{executor_id}/request-pause")
async def request_pause_by_pair(task_id: str, executor_id: str, request: Request) -> JSONResponse:
    """Request a pause on the caller's assignment for this task."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    lifecycle = _lifecycle()
    assignment_id = lifecycle.find_assignment_id(task_id, executor_id)
    result = await lifecycle.request_pause(
        actor,
        assignment_id,
        data.get("reason_id"),
        data.get("duration_ms"),
        data.get("comment"),
    )
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/assignments/{executor_id}/accept-pause")
async def accept_pause_by_pair(task_id: str, executor_id: str, request: Request) -> JSONResponse:
    """Accept the executor's pending pause request."""
    actor = await authenticate(request)
    await read_optional_body(request)
    lifecycle = _lifecycle()
    assignment_id = lifecycle.find_assignment_id(task_id, executor_id)
    result = await lifecycle.accept_pause(actor, assignment_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/assignments/{executor_id}/reject-pause")
async def reject_pause_by_pair(task_id: str, executor_id: str, request: Request) -> JSONResponse:
    """Reject the executor's pending pause request."""
    actor = await authenticate(request)
    data = await read_optional_body(request)
    lifecycle = _lifecycle()
    assignment_id = lifecycle.find_assignment_id(task_id, executor_id)
    result = await lifecycle.reject_pause(actor, assignment_id, data.get("message"))
    return JSONResponse(status_code=200, content=result)


# ---------------------------------------------------------------------------
# Method-not-allowed handlers for command routes.
# ---------------------------------------------------------------------------


@router.api_route(
    "/tasks",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def tasks_method_not_allowed(request: Request) -> None:
    """Reject wrong methods on /tasks."""
    _ = request
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})


@router.api_route(
    "/tasks/{task_id}/assignments/{executor_id}/{command}",
    methods=["GET", "PUT", "PATCH", "DELETE"],
)
async def pair_command_method_not_allowed(
    task_id: str, executor_id: str, command: str, request: Request
) -> None:
    """Reject wrong methods on pair-addressed pause commands."""
    _ = (task_id, executor_id, request)
    if command not in ("request-pause", "accept-pause", "reject-pause"):
        raise ServiceError("NOT_FOUND", "Resource not found", 404, {})
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
