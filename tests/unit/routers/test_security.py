"""Request validation middleware tests: content type and body size."""

from __future__ import annotations

import pytest

from tests.helpers import auth


@pytest.mark.unit
async def test_wrong_content_type_returns_415(client):
    """Command endpoints only accept JSON bodies."""
    response = await client.post(
        "/tasks",
        content=b"task_id=task-1",
        headers={**auth("tok-alice"), "Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 415
    assert response.json()["error"] == "UNSUPPORTED_MEDIA_TYPE"


@pytest.mark.unit
async def test_body_without_content_type_returns_415(client):
    """A body sent without a Content-Type header is refused."""
    response = await client.post(
        "/assignments/asg-1/start", content=b"{}", headers=auth("tok-bob")
    )

    assert response.status_code == 415


@pytest.mark.unit
async def test_empty_command_without_content_type_passes(client):
    """Body-less commands need no Content-Type and reach the router."""
    response = await client.post("/assignments/asg-1/start", headers=auth("tok-bob"))

    assert response.status_code == 404
    assert response.json()["error"] == "ASSIGNMENT_NOT_FOUND"


@pytest.mark.unit
async def test_oversized_body_returns_413(client):
    """Bodies above request.max_body_size are refused before routing."""
    response = await client.post(
        "/disputes",
        content=b'{"contract_id": "' + b"x" * 1_100_000 + b'"}',
        headers={**auth("tok-alice"), "Content-Type": "application/json"},
    )

    assert response.status_code == 413
    assert response.json()["error"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.unit
async def test_unknown_path_returns_404(client):
    """Unknown paths use the standard error envelope."""
    response = await client.get("/nowhere")

    assert response.status_code == 404
    assert response.json() == {
        "error": "NOT_FOUND",
        "message": "Resource not found",
        "details": {},
    }
