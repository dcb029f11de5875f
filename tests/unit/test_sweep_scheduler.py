"""Unit tests for the background sweep."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from tests.helpers import CUSTOMER, CUSTOMER_ID, EXECUTOR, EXECUTOR_ID, OTHER_EXECUTOR, at, iso

HOUR_MS = 60 * 60 * 1000


@pytest.mark.unit
async def test_missed_start_removes_refunds_and_sanctions(settlement) -> None:
    """Past the start window the assignment is removed and the escrow refunded."""
    assignment = await settlement.selected(budget=400)

    early = await settlement.scheduler.run_once(at(11))
    assert early.expired == 0

    result = await settlement.scheduler.run_once(at(12))

    assert result.expired == 1
    current = settlement.store.get_assignment(assignment["assignment_id"])
    assert current["status"] == "removed_auto"
    assert settlement.store.get_contract(assignment["contract_id"])["status"] == "cancelled"
    assert settlement.escrow.get("task-1", EXECUTOR_ID)["status"] == "refunded"
    assert settlement.balances.get_balance(CUSTOMER_ID) == 400
    assert settlement.store.get_task("task-1")["assigned_executor_ids"] == []
    assert settlement.store.get_task("task-1")["status"] == "open"
    assert settlement.sanctions.violation_level(EXECUTOR_ID, "no_start_12h", at(12)) == 1
    assert settlement.event_kinds(EXECUTOR_ID)[-2:] == [
        "assignment_removed",
        "selection_rejected",
    ]
    assert "assignment_removed" in settlement.event_kinds(CUSTOMER_ID)


@pytest.mark.unit
async def test_sweep_is_idempotent(settlement) -> None:
    """A second sweep over the same moment changes nothing."""
    await settlement.selected()
    await settlement.scheduler.run_once(at(13))
    events_before = len(settlement.dispatcher.recent)

    again = await settlement.scheduler.run_once(at(13))

    assert again.expired == 0
    assert len(settlement.dispatcher.recent) == events_before
    assert len(settlement.store.list_violations(EXECUTOR_ID, "no_start_12h")) == 1


@pytest.mark.unit
async def test_missed_execution_deadline_marks_overdue(settlement) -> None:
    """Past the execution deadline the assignment is overdue; escrow stays frozen."""
    assignment = await settlement.started()

    result = await settlement.scheduler.run_once(at(25))

    assert result.overdue == 1
    current = settlement.store.get_assignment(assignment["assignment_id"])
    assert current["status"] == "overdue"
    assert current["overdue_at"] == iso(at(25))
    assert settlement.escrow.get("task-1", EXECUTOR_ID)["status"] == "frozen"
    assert settlement.sanctions.violation_level(EXECUTOR_ID, "no_submit_24h", at(25)) == 1
    assert "assignment_overdue" in settlement.event_kinds(EXECUTOR_ID)


@pytest.mark.unit
async def test_unanswered_pause_is_auto_accepted(settlement) -> None:
    """A pause request left open past its auto-accept time is granted."""
    assignment = await settlement.started()
    await settlement.lifecycle.request_pause(
        EXECUTOR, assignment["assignment_id"], "illness", HOUR_MS, now=at(2)
    )

    result = await settlement.scheduler.run_once(at(14))

    assert result.pauses_auto_accepted == 1
    current = settlement.store.get_assignment(assignment["assignment_id"])
    assert current["status"] == "paused"
    assert current["pause_decision"] == "auto_accepted"
    assert current["paused_until"] == iso(at(15))
    # 12h waiting plus 1h requested, capped at 12h
    assert current["execution_extension_ms"] == 12 * HOUR_MS
    assert current["execution_deadline_at"] == iso(at(37))
    assert "pause_auto_accepted" in settlement.event_kinds(CUSTOMER_ID)

    resumed = await settlement.scheduler.run_once(at(15))
    assert resumed.pauses_ended == 1
    current = settlement.store.get_assignment(assignment["assignment_id"])
    assert current["status"] == "in_progress"


@pytest.mark.unit
async def test_tick_runs_several_kinds_in_one_pass(settlement) -> None:
    """One tick handles every due list."""
    await settlement.started()
    await settlement.selected(task_id="task-2", executor=OTHER_EXECUTOR)

    result = await settlement.scheduler.tick(at(30))

    assert result.ran is True
    assert result.expired == 1
    assert result.overdue == 1
    assert result.failures == 0
    assert settlement.scheduler.last_result is result
    assert settlement.scheduler.last_tick_at == iso(at(30))


@pytest.mark.unit
async def test_transition_failure_is_counted(settlement) -> None:
    """A failing transition is logged and counted; the sweep continues."""
    await settlement.selected()

    with patch.object(
        settlement.lifecycle, "expire_no_start", side_effect=RuntimeError("boom")
    ):
        result = await settlement.scheduler.run_once(at(13))

    assert result.failures == 1
    assert result.expired == 0


@pytest.mark.unit
async def test_busy_tick_is_skipped(settlement) -> None:
    """A tick arriving while another runs is skipped, not queued."""
    release = asyncio.Event()
    entered = asyncio.Event()

    async def slow_expire(assignment, now):
        entered.set()
        await release.wait()
        return True

    await settlement.selected()
    with patch.object(settlement.lifecycle, "expire_no_start", side_effect=slow_expire):
        first = asyncio.create_task(settlement.scheduler.tick(at(13)))
        await entered.wait()

        skipped = await settlement.scheduler.tick(at(13))

        release.set()
        finished = await first

    assert skipped.ran is False
    assert skipped.skipped_reason == "busy"
    assert finished.expired == 1


@pytest.mark.unit
async def test_store_not_ready_skips(settlement) -> None:
    """A closed store makes the sweep a logged no-op."""
    settlement.store.close()

    result = await settlement.scheduler.run_once(at(13))

    assert result.ran is False
    assert result.skipped_reason == "store_not_ready"


@pytest.mark.unit
async def test_background_loop_starts_and_stops(settlement) -> None:
    """The loop ticks after its initial delay and stops cleanly."""
    settlement.scheduler.start()
    assert settlement.scheduler.started is True

    for _ in range(50):
        if settlement.scheduler.last_result is not None:
            break
        await asyncio.sleep(0.01)

    await settlement.scheduler.stop()

    assert settlement.scheduler.started is False
    assert settlement.scheduler.last_result is not None


@pytest.mark.unit
async def test_failing_settlement_retry_is_counted(settlement) -> None:
    """A settlement whose credit keeps failing stays pending and counts as a failure."""
    assignment = await settlement.submitted()
    with patch.object(settlement.balances, "credit", side_effect=RuntimeError("disk full")):
        await settlement.lifecycle.accept(CUSTOMER, assignment["assignment_id"], now=at(3))
        result = await settlement.scheduler.run_once(at(4))

    assert result.settlements_completed == 0
    assert result.failures == 1
    assert settlement.escrow.get("task-1", EXECUTOR_ID)["settled_at"] is None

    recovered = await settlement.scheduler.run_once(at(5))
    assert recovered.settlements_completed == 1
    assert recovered.to_dict()["settlements_completed"] == 1
    assert settlement.balances.get_balance(EXECUTOR_ID) == 1000
