"""Unit test fixtures: cache clearing and a fully wired service graph."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest

from settlement_service.config import clear_settings_cache
from settlement_service.core.state import reset_app_state
from settlement_service.services.assignment_lifecycle import AssignmentLifecycle, LifecycleWindows
from settlement_service.services.balance_ledger import BalanceLedger
from settlement_service.services.dispute_service import DisputeService
from settlement_service.services.escrow_ledger import EscrowLedger
from settlement_service.services.events import EventDispatcher
from settlement_service.services.sanctions import SanctionsEngine
from settlement_service.services.status_aggregator import StatusAggregator
from settlement_service.services.store import SettlementStore
from settlement_service.services.sweep_scheduler import SweepScheduler
from settlement_service.services.task_registry import TaskRegistry
from tests.helpers import CUSTOMER, CUSTOMER_ID, EXECUTOR, at

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime
    from pathlib import Path

    from settlement_service.services.actor import Actor


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@dataclass
class Settlement:
    """Every settlement service wired over one temporary database."""

    store: SettlementStore
    balances: BalanceLedger
    escrow: EscrowLedger
    sanctions: SanctionsEngine
    aggregator: StatusAggregator
    dispatcher: EventDispatcher
    lifecycle: AssignmentLifecycle
    registry: TaskRegistry
    disputes: DisputeService
    scheduler: SweepScheduler

    def event_kinds(self, recipient_id: str | None = None) -> list[str]:
        """Kinds of recorded events, optionally for one recipient."""
        return [
            event.kind
            for event in self.dispatcher.recent
            if recipient_id is None or event.recipient_id == recipient_id
        ]

    async def selected(
        self,
        task_id: str = "task-1",
        budget: int = 1000,
        executor: Actor = EXECUTOR,
        now: datetime | None = None,
        max_executors: int = 1,
        fund: bool = True,
    ) -> dict:
        """Register a funded task and select ``executor``; returns the assignment."""
        moment = now if now is not None else at(0)
        if fund and budget > 0:
            reference = f"topup:{task_id}:{executor.account_id}"
            self.balances.credit(CUSTOMER_ID, budget, reference=reference)
        if self.store.get_task(task_id) is None:
            self.registry.register_task(
                CUSTOMER,
                {"task_id": task_id, "budget_amount": budget, "max_executors": max_executors},
                now=moment,
            )
        assignment, _ = await self.registry.select_executor(
            CUSTOMER, task_id, executor.account_id, now=moment
        )
        return assignment

    async def started(self, task_id: str = "task-1", budget: int = 1000, **kwargs) -> dict:
        """Selected at t=0 and started at t=1h."""
        assignment = await self.selected(task_id=task_id, budget=budget, **kwargs)
        executor = kwargs.get("executor", EXECUTOR)
        return await self.lifecycle.start(executor, assignment["assignment_id"], now=at(1))

    async def submitted(self, task_id: str = "task-1", budget: int = 1000) -> dict:
        """Started and submitted at t=2h."""
        assignment = await self.started(task_id=task_id, budget=budget)
        return await self.lifecycle.submit(EXECUTOR, assignment["assignment_id"], now=at(2))


@pytest.fixture
def settlement(tmp_path: Path) -> Iterator[Settlement]:
    """Service graph over a temp SQLite database with default lifecycle windows."""
    db_path = str(tmp_path / "settlement.db")
    store = SettlementStore(db_path=db_path)
    balances = BalanceLedger(db_path=db_path)
    escrow = EscrowLedger(store=store, balances=balances)
    sanctions = SanctionsEngine(store=store)
    aggregator = StatusAggregator(store=store)
    dispatcher = EventDispatcher(notification_client=None, queue_size=100)
    windows = LifecycleWindows()
    lifecycle = AssignmentLifecycle(
        store=store,
        escrow=escrow,
        sanctions=sanctions,
        aggregator=aggregator,
        dispatcher=dispatcher,
        windows=windows,
    )
    registry = TaskRegistry(
        store=store,
        escrow=escrow,
        sanctions=sanctions,
        aggregator=aggregator,
        dispatcher=dispatcher,
        windows=windows,
    )
    disputes = DisputeService(
        store=store,
        escrow=escrow,
        aggregator=aggregator,
        dispatcher=dispatcher,
        sla_seconds=86400,
        max_detail_length=200,
    )
    scheduler = SweepScheduler(
        store=store, lifecycle=lifecycle, initial_delay=0, interval=60, batch_size=50
    )
    yield Settlement(
        store=store,
        balances=balances,
        escrow=escrow,
        sanctions=sanctions,
        aggregator=aggregator,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        registry=registry,
        disputes=disputes,
        scheduler=scheduler,
    )
    balances.close()
    store.close()
