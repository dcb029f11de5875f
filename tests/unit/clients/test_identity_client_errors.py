from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from settlement_service.clients.identity_client import IdentityClient
from settlement_service.core.exceptions import ServiceError


def _make_client(mock_response: httpx.Response | None = None, error: Exception | None = None):
    """Create an IdentityClient whose HTTP client is a mock."""
    client = IdentityClient(
        base_url="http://mock-identity:8001",
        session_path="/sessions/resolve",
        timeout_seconds=5,
    )
    mock_http = AsyncMock(spec=httpx.AsyncClient)
    if error is not None:
        mock_http.post = AsyncMock(side_effect=error)
    else:
        mock_http.post = AsyncMock(return_value=mock_response)
    client._client = mock_http
    return client


def _mock_response(status_code: int, json_body: Any) -> httpx.Response:
    """Create a mock httpx.Response."""
    return httpx.Response(
        status_code=status_code,
        json=json_body,
        request=httpx.Request("POST", "http://mock-identity:8001/sessions/resolve"),
    )


@pytest.mark.unit
async def test_resolve_session_returns_account_and_role() -> None:
    client = _make_client(
        _mock_response(200, {"account_id": "u-1", "role": "executor", "extra": "ignored"})
    )

    session = await client.resolve_session("tok")

    assert session == {"account_id": "u-1", "role": "executor"}
    client._client.post.assert_awaited_once_with("/sessions/resolve", json={"token": "tok"})


@pytest.mark.unit
@pytest.mark.parametrize("status_code", [401, 403, 404])
async def test_rejected_session_raises_unauthorized(status_code: int) -> None:
    client = _make_client(_mock_response(status_code, {"error": "NOPE"}))

    with pytest.raises(ServiceError) as exc_info:
        await client.resolve_session("tok")

    assert exc_info.value.status_code == 401
    assert exc_info.value.error == "UNAUTHORIZED"


@pytest.mark.unit
async def test_unexpected_status_raises_unavailable() -> None:
    client = _make_client(_mock_response(500, {"error": "BOOM"}))

    with pytest.raises(ServiceError) as exc_info:
        await client.resolve_session("tok")

    assert exc_info.value.status_code == 503
    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"


@pytest.mark.unit
@pytest.mark.parametrize(
    "body",
    [
        {"account_id": "u-1", "role": "admin"},
        {"account_id": "", "role": "customer"},
        {"role": "customer"},
    ],
)
async def test_unexpected_session_shape_raises_unavailable(body: dict[str, Any]) -> None:
    client = _make_client(_mock_response(200, body))

    with pytest.raises(ServiceError) as exc_info:
        await client.resolve_session("tok")

    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"


@pytest.mark.unit
async def test_invalid_json_raises_unavailable() -> None:
    response = httpx.Response(
        status_code=200,
        content=b"not json",
        request=httpx.Request("POST", "http://mock-identity:8001/sessions/resolve"),
    )
    client = _make_client(response)

    with pytest.raises(ServiceError) as exc_info:
        await client.resolve_session("tok")

    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"


@pytest.mark.unit
@pytest.mark.parametrize(
    "error",
    [
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        httpx.RemoteProtocolError("broken"),
    ],
)
async def test_transport_errors_raise_unavailable(error: Exception) -> None:
    client = _make_client(error=error)

    with pytest.raises(ServiceError) as exc_info:
        await client.resolve_session("tok")

    assert exc_info.value.status_code == 503
    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"
