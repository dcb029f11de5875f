"""Dispute endpoint tests."""

from __future__ import annotations

import pytest

from settlement_service.core.state import get_app_state
from tests.helpers import CUSTOMER_ID, EXECUTOR_ID, auth
from tests.unit.routers.conftest import selected_assignment


async def _submitted_contract(client, budget_amount: int = 1000) -> str:
    assignment = await selected_assignment(client, budget_amount=budget_amount)
    assignment_id = assignment["assignment_id"]
    await client.post(f"/assignments/{assignment_id}/start", headers=auth("tok-bob"))
    await client.post(f"/assignments/{assignment_id}/submit", headers=auth("tok-bob"))
    return str(assignment["contract_id"])


async def _open(client, contract_id: str, token: str = "tok-alice"):
    return await client.post(
        "/disputes",
        json={
            "contract_id": contract_id,
            "reason": {"category_id": "quality", "reason_id": "incomplete"},
        },
        headers=auth(token),
    )


@pytest.mark.unit
class TestOpenDispute:
    """POST /disputes"""

    async def test_open_returns_201_then_200(self, client):
        contract_id = await _submitted_contract(client)

        first = await _open(client, contract_id)
        second = await _open(client, contract_id, token="tok-bob")

        assert first.status_code == 201
        assert first.json()["status"] == "open"
        assert first.json()["version"] == 1
        assert second.status_code == 200
        assert second.json()["dispute_id"] == first.json()["dispute_id"]

        contract = await client.get(f"/contracts/{contract_id}", headers=auth("tok-alice"))
        task = await client.get("/tasks/task-1", headers=auth("tok-alice"))
        assert contract.json()["status"] == "disputed"
        assert task.json()["status"] == "dispute"

    async def test_open_requires_a_party(self, client):
        contract_id = await _submitted_contract(client)

        stranger = await _open(client, contract_id, token="tok-dave")
        arbiter = await _open(client, contract_id, token="tok-erin")
        missing = await _open(client, "ctr-missing")

        assert stranger.status_code == 403
        assert arbiter.status_code == 403
        assert missing.status_code == 404
        assert missing.json()["error"] == "CONTRACT_NOT_FOUND"

    async def test_list_and_get(self, client):
        contract_id = await _submitted_contract(client)
        dispute_id = (await _open(client, contract_id)).json()["dispute_id"]

        arbiter = await client.get("/disputes", headers=auth("tok-erin"))
        party = await client.get(
            "/disputes", params={"contract_id": contract_id}, headers=auth("tok-bob")
        )
        stranger = await client.get("/disputes", headers=auth("tok-dave"))
        single = await client.get(f"/disputes/{dispute_id}", headers=auth("tok-bob"))
        hidden = await client.get(f"/disputes/{dispute_id}", headers=auth("tok-carol"))

        assert [d["dispute_id"] for d in arbiter.json()["disputes"]] == [dispute_id]
        assert len(party.json()["disputes"]) == 1
        assert stranger.json() == {"disputes": []}
        assert single.json()["reason"]["category_id"] == "quality"
        assert hidden.status_code == 403


@pytest.mark.unit
class TestArbitration:
    """take-in-work, request-more-info, decide and close."""

    async def test_full_arbitration_with_split(self, client):
        contract_id = await _submitted_contract(client)
        dispute = (await _open(client, contract_id)).json()
        dispute_id = dispute["dispute_id"]

        taken = await client.post(
            f"/disputes/{dispute_id}/take-in-work",
            json={"expected_version": dispute["version"]},
            headers=auth("tok-erin"),
        )
        assert taken.status_code == 200
        assert taken.json()["status"] == "in_review"

        more_info = await client.post(
            f"/disputes/{dispute_id}/request-more-info",
            json={"expected_version": taken.json()["version"]},
            headers=auth("tok-erin"),
        )
        assert more_info.json()["status"] == "need_more_info"

        retaken = await client.post(
            f"/disputes/{dispute_id}/take-in-work", headers=auth("tok-erin")
        )
        decided = await client.post(
            f"/disputes/{dispute_id}/decide",
            json={
                "decision": {"payout": "split", "executor_amount": 250, "customer_amount": 750},
                "expected_version": retaken.json()["version"],
            },
            headers=auth("tok-erin"),
        )

        assert decided.status_code == 200
        assert decided.json()["status"] == "decided"
        assert decided.json()["locked_decision_at"] is not None
        balances = get_app_state().balances
        assert balances.get_balance(EXECUTOR_ID) == 250
        assert balances.get_balance(CUSTOMER_ID) == 750

        closed = await client.post(f"/disputes/{dispute_id}/close", headers=auth("tok-bob"))
        assert closed.status_code == 200
        assert closed.json()["status"] == "closed"

    async def test_version_mismatch(self, client):
        contract_id = await _submitted_contract(client)
        dispute_id = (await _open(client, contract_id)).json()["dispute_id"]

        response = await client.post(
            f"/disputes/{dispute_id}/take-in-work",
            json={"expected_version": 7},
            headers=auth("tok-erin"),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "VERSION_MISMATCH"
        assert response.json()["details"]["current_version"] == 1

    async def test_second_arbiter_is_refused(self, client):
        contract_id = await _submitted_contract(client)
        dispute_id = (await _open(client, contract_id)).json()["dispute_id"]
        await client.post(f"/disputes/{dispute_id}/take-in-work", headers=auth("tok-erin"))

        response = await client.post(
            f"/disputes/{dispute_id}/take-in-work", headers=auth("tok-frank")
        )

        assert response.status_code == 409
        assert response.json()["error"] == "ASSIGNED_TO_ANOTHER"

    async def test_split_mismatch(self, client):
        contract_id = await _submitted_contract(client)
        dispute_id = (await _open(client, contract_id)).json()["dispute_id"]
        await client.post(f"/disputes/{dispute_id}/take-in-work", headers=auth("tok-erin"))

        response = await client.post(
            f"/disputes/{dispute_id}/decide",
            json={"decision": {"payout": "split", "executor_amount": 1, "customer_amount": 1}},
            headers=auth("tok-erin"),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "AMOUNT_MISMATCH"

    async def test_invalid_decision(self, client):
        contract_id = await _submitted_contract(client)
        dispute_id = (await _open(client, contract_id)).json()["dispute_id"]
        await client.post(f"/disputes/{dispute_id}/take-in-work", headers=auth("tok-erin"))

        response = await client.post(
            f"/disputes/{dispute_id}/decide",
            json={"decision": {"payout": "nobody"}},
            headers=auth("tok-erin"),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_DECISION"

    async def test_party_cannot_decide(self, client):
        contract_id = await _submitted_contract(client)
        dispute_id = (await _open(client, contract_id)).json()["dispute_id"]

        response = await client.post(
            f"/disputes/{dispute_id}/decide",
            json={"decision": {"payout": "customer"}},
            headers=auth("tok-alice"),
        )

        assert response.status_code == 403

    async def test_unknown_dispute(self, client):
        response = await client.post("/disputes/dsp-missing/take-in-work", headers=auth("tok-erin"))

        assert response.status_code == 404
        assert response.json()["error"] == "DISPUTE_NOT_FOUND"


@pytest.mark.unit
class TestMessages:
    """GET and POST /disputes/{id}/messages."""

    async def test_post_and_list_messages(self, client):
        contract_id = await _submitted_contract(client)
        dispute_id = (await _open(client, contract_id)).json()["dispute_id"]

        posted = await client.post(
            f"/disputes/{dispute_id}/messages",
            json={"text": "Please look at the second file"},
            headers=auth("tok-bob"),
        )
        listed = await client.get(f"/disputes/{dispute_id}/messages", headers=auth("tok-erin"))

        assert posted.status_code == 201
        assert posted.json()["kind"] == "user"
        assert [m["text"] for m in listed.json()["messages"]] == [
            "Please look at the second file"
        ]

    async def test_party_cannot_post_system_message(self, client):
        contract_id = await _submitted_contract(client)
        dispute_id = (await _open(client, contract_id)).json()["dispute_id"]

        response = await client.post(
            f"/disputes/{dispute_id}/messages",
            json={"text": "official", "kind": "system"},
            headers=auth("tok-alice"),
        )

        assert response.status_code == 403


@pytest.mark.unit
async def test_dispute_wrong_methods(client):
    """Command paths answer 405 for other methods; unknown commands 404."""
    collection = await client.delete("/disputes", headers=auth("tok-erin"))
    command = await client.get("/disputes/dsp-1/decide", headers=auth("tok-erin"))
    messages = await client.put("/disputes/dsp-1/messages", headers=auth("tok-erin"))
    unknown = await client.get("/disputes/dsp-1/escalate", headers=auth("tok-erin"))

    assert collection.status_code == 405
    assert command.status_code == 405
    assert messages.status_code == 405
    assert unknown.status_code == 404
