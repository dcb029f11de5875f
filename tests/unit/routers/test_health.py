"""Health endpoint tests for the settlement service."""

from __future__ import annotations

import asyncio

import pytest

from settlement_service.core.state import get_app_state
from tests.unit.routers.conftest import selected_assignment


@pytest.mark.unit
async def test_health_returns_ok_with_correct_schema(client):
    """GET /health returns 200 with empty statistics on a fresh store."""
    response = await client.get("/health")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "ok"
    assert data["store_ready"] is True
    assert isinstance(data["uptime_seconds"], (int, float))
    assert data["started_at"].endswith("Z")
    assert data["assignments_by_status"] == {}
    assert data["escrows_by_status"] == {}
    assert data["frozen_escrow_amount"] == 0
    assert data["scheduler"] == {"running": False, "last_tick_at": None, "last_result": None}


@pytest.mark.unit
async def test_health_uptime_increases_over_time(client):
    """Uptime is monotonic across calls."""
    first = (await client.get("/health")).json()["uptime_seconds"]
    await asyncio.sleep(0.05)
    second = (await client.get("/health")).json()["uptime_seconds"]
    assert second > first


@pytest.mark.unit
async def test_health_counts_reflect_settlement_data(client):
    """Counts and the frozen total follow selections."""
    await selected_assignment(client, budget_amount=250)

    data = (await client.get("/health")).json()

    assert data["assignments_by_status"] == {"pending_start": 1}
    assert data["contracts_by_status"] == {"active": 1}
    assert data["escrows_by_status"] == {"frozen": 1}
    assert data["frozen_escrow_amount"] == 250


@pytest.mark.unit
async def test_health_reports_last_sweep(client):
    """A sweep tick shows up in the scheduler section."""
    await get_app_state().scheduler.run_once()

    scheduler = (await client.get("/health")).json()["scheduler"]

    assert scheduler["last_tick_at"] is not None
    assert scheduler["last_result"]["ran"] is True


@pytest.mark.unit
async def test_health_degraded_when_store_closed(client):
    """A closed store reports degraded instead of failing."""
    get_app_state().store.close()

    data = (await client.get("/health")).json()

    assert data["status"] == "degraded"
    assert data["store_ready"] is False
    assert data["frozen_escrow_amount"] == 0
