"""Router test fixtures with mocked Identity and notification services."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from settlement_service.app import create_app
from settlement_service.config import clear_settings_cache
from settlement_service.core.exceptions import ServiceError
from settlement_service.core.lifespan import lifespan
from settlement_service.core.state import get_app_state, reset_app_state
from tests.helpers import CUSTOMER_ID, EXECUTOR_ID, auth, make_config_yaml, resolve_session

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    db_path = tmp_path / "settlement.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(make_config_yaml(str(db_path), str(tmp_path / "logs")))

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Mock Identity client: sessions come from tests.helpers.SESSIONS
        mock_identity = AsyncMock()
        mock_identity.close = AsyncMock()
        mock_identity.resolve_session = AsyncMock(side_effect=resolve_session)
        state.identity_client = mock_identity

        # Mock notification client: deliveries always succeed
        mock_notifications = AsyncMock()
        mock_notifications.close = AsyncMock()
        state.notification_client = mock_notifications

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Mock override fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_identity_unavailable(app: Any) -> None:
    """Configure the Identity mock to simulate service unavailability."""
    state = get_app_state()
    state.identity_client.resolve_session = AsyncMock(
        side_effect=ServiceError(
            "IDENTITY_SERVICE_UNAVAILABLE", "Cannot connect to Identity service", 503, {}
        )
    )


# ---------------------------------------------------------------------------
# Settlement helper functions
# ---------------------------------------------------------------------------
def fund(account_id: str, amount: int, reference: str) -> None:
    """Credit an account directly through the balance ledger."""
    balances = get_app_state().balances
    assert balances is not None
    balances.credit(account_id, amount, reference=reference)


async def register_task(
    client: AsyncClient,
    *,
    task_id: str = "task-1",
    budget_amount: int = 1000,
    max_executors: int = 1,
    token: str = "tok-alice",
) -> Any:
    """Register a task via POST /tasks and return the response."""
    return await client.post(
        "/tasks",
        json={"task_id": task_id, "budget_amount": budget_amount, "max_executors": max_executors},
        headers=auth(token),
    )


async def select_executor(
    client: AsyncClient,
    *,
    task_id: str = "task-1",
    executor_id: str = EXECUTOR_ID,
    token: str = "tok-alice",
) -> Any:
    """Select an executor via POST /tasks/{task_id}/assignments."""
    return await client.post(
        f"/tasks/{task_id}/assignments",
        json={"executor_id": executor_id},
        headers=auth(token),
    )


async def selected_assignment(
    client: AsyncClient,
    *,
    task_id: str = "task-1",
    budget_amount: int = 1000,
    executor_id: str = EXECUTOR_ID,
) -> dict[str, Any]:
    """Fund the customer, register a task and select an executor; returns the assignment."""
    if budget_amount > 0:
        fund(CUSTOMER_ID, budget_amount, f"topup:{task_id}:{executor_id}")
    registered = await register_task(client, task_id=task_id, budget_amount=budget_amount)
    assert registered.status_code == 201
    selected = await select_executor(client, task_id=task_id, executor_id=executor_id)
    assert selected.status_code == 201
    return dict(selected.json())
