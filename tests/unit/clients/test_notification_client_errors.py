from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from settlement_service.clients.notification_client import NotificationClient
from settlement_service.core.exceptions import ServiceError


def _make_client(status_code: int | None = None, error: Exception | None = None):
    """Create a NotificationClient whose HTTP client is a mock."""
    client = NotificationClient(
        base_url="http://mock-notify:8011",
        notify_path="/notifications",
        timeout_seconds=5,
    )
    mock_http = AsyncMock(spec=httpx.AsyncClient)
    if error is not None:
        mock_http.post = AsyncMock(side_effect=error)
    else:
        mock_http.post = AsyncMock(
            return_value=httpx.Response(
                status_code=status_code or 202,
                json={},
                request=httpx.Request("POST", "http://mock-notify:8011/notifications"),
            )
        )
    client._client = mock_http
    return client


@pytest.mark.unit
async def test_notify_posts_event() -> None:
    client = _make_client(202)

    await client.notify("u-1", "pause_accepted", "Accepted", {"task_id": "t-1"})

    client._client.post.assert_awaited_once_with(
        "/notifications",
        json={
            "recipient_id": "u-1",
            "kind": "pause_accepted",
            "text": "Accepted",
            "meta": {"task_id": "t-1"},
        },
    )


@pytest.mark.unit
async def test_notify_error_status_raises() -> None:
    client = _make_client(500)

    with pytest.raises(ServiceError) as exc_info:
        await client.notify("u-1", "pause_accepted", "Accepted", {})

    assert exc_info.value.status_code == 502
    assert exc_info.value.error == "NOTIFICATION_SERVICE_UNAVAILABLE"


@pytest.mark.unit
async def test_notify_transport_error_raises() -> None:
    client = _make_client(error=httpx.ConnectError("refused"))

    with pytest.raises(ServiceError) as exc_info:
        await client.notify("u-1", "pause_accepted", "Accepted", {})

    assert exc_info.value.error == "NOTIFICATION_SERVICE_UNAVAILABLE"
