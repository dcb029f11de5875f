"""Task projection and executor selection."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import ServiceError
from settlement_service.logging import get_logger
from settlement_service.services import events
from settlement_service.services.actor import ARBITER, CUSTOMER, EXECUTOR, Actor, require_role
from settlement_service.services.events import OutboundEvent
from settlement_service.services.statuses import (
    ASSIGNMENT_TERMINAL_STATUSES,
    CONTRACT_ACTIVE,
    PENDING_START,
    TASK_CLOSED,
    TASK_OPEN,
)
from settlement_service.services.store import DuplicateTaskError
from settlement_service.services.timestamps import add_ms, to_iso, utc_now

if TYPE_CHECKING:
    from settlement_service.services.assignment_lifecycle import LifecycleWindows
    from settlement_service.services.escrow_ledger import EscrowLedger
    from settlement_service.services.events import EventDispatcher
    from settlement_service.services.sanctions import SanctionsEngine
    from settlement_service.services.status_aggregator import StatusAggregator
    from settlement_service.services.store import SettlementStore

MAX_TASK_ID_LENGTH = 128


class TaskRegistry:
    """
    Keeps the task projection the settlement flows need and selects executors.

    Selection freezes the task budget in escrow before anything else, then
    creates (or reuses) the contract and the assignment for the pair.
    """

    def __init__(
        self,
        store: SettlementStore,
        escrow: EscrowLedger,
        sanctions: SanctionsEngine,
        aggregator: StatusAggregator,
        dispatcher: EventDispatcher,
        windows: LifecycleWindows,
    ) -> None:
        self._store = store
        self._escrow = escrow
        self._sanctions = sanctions
        self._aggregator = aggregator
        self._dispatcher = dispatcher
        self._windows = windows

    def register_task(
        self,
        actor: Actor,
        data: dict[str, Any],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Register a task owned by the calling customer.

        Raises:
            ServiceError: INVALID_PAYLOAD, TASK_ALREADY_EXISTS
        """
        require_role(actor, CUSTOMER)

        task_id = data.get("task_id")
        if task_id is None:
            task_id = f"task-{uuid.uuid4()}"
        elif not isinstance(task_id, str) or not task_id.strip():
            raise ServiceError("INVALID_PAYLOAD", "task_id must be a non-empty string", 400, {})
        elif len(task_id) > MAX_TASK_ID_LENGTH:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"task_id must be at most {MAX_TASK_ID_LENGTH} characters",
                400,
                {},
            )

        budget_amount = data.get("budget_amount", 0)
        if not _is_int(budget_amount) or budget_amount < 0:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "budget_amount must be a non-negative integer in minor units",
                400,
                {},
            )

        max_executors = data.get("max_executors", 1)
        if not _is_int(max_executors) or max_executors < 1:
            raise ServiceError(
                "INVALID_PAYLOAD", "max_executors must be a positive integer", 400, {}
            )

        timestamp = to_iso(now if now is not None else utc_now())
        task = {
            "task_id": task_id.strip(),
            "customer_id": actor.account_id,
            "budget_amount": budget_amount,
            "max_executors": max_executors,
            "status": TASK_OPEN,
            "completed_at": None,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        try:
            self._store.insert_task(task)
        except DuplicateTaskError as exc:
            raise ServiceError(
                "TASK_ALREADY_EXISTS",
                "A task with this task_id already exists",
                409,
                {"task_id": task["task_id"]},
            ) from exc

        get_logger(__name__).info(
            "Task registered",
            extra={
                "task_id": task["task_id"],
                "customer_id": actor.account_id,
                "budget_amount": budget_amount,
                "max_executors": max_executors,
            },
        )
        return self.require_task(task["task_id"])

    def get_task(self, actor: Actor, task_id: str) -> dict[str, Any]:
        """Return a task visible to the actor: its customer, its executors, or an arbiter."""
        task = self.require_task(task_id)
        if actor.role == ARBITER:
            return task
        if actor.role == CUSTOMER and task["customer_id"] == actor.account_id:
            return task
        if actor.role == EXECUTOR and (
            actor.account_id in task["assigned_executor_ids"]
            or self._store.get_assignment_by_pair(task_id, actor.account_id) is not None
        ):
            return task
        raise ServiceError("FORBIDDEN", "Task is not visible to this account", 403, {})

    def require_task(self, task_id: str) -> dict[str, Any]:
        """Fetch a task or raise TASK_NOT_FOUND."""
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {"task_id": task_id})
        return task

    async def select_executor(
        self,
        actor: Actor,
        task_id: str,
        executor_id: object,
        now: datetime | None = None,
    ) -> tuple[dict[str, Any], bool]:
        """
        Assign an executor to the customer's task.

        Returns:
            (assignment, created) where ``created`` is False when the pair
            was already assigned

        Raises:
            ServiceError: FORBIDDEN, TASK_NOT_FOUND, INVALID_PAYLOAD,
                INVALID_STATUS, EXECUTOR_BANNED, NO_SLOTS, ALREADY_SELECTED,
                INSUFFICIENT_BALANCE
        """
        require_role(actor, CUSTOMER)
        if not isinstance(executor_id, str) or not executor_id.strip():
            raise ServiceError("INVALID_PAYLOAD", "executor_id must be a non-empty string", 400, {})
        executor_id = executor_id.strip()

        moment = now if now is not None else utc_now()
        task = self.require_task(task_id)
        if task["customer_id"] != actor.account_id:
            raise ServiceError(
                "FORBIDDEN", "Only the task's customer may select executors", 403, {}
            )
        if executor_id == actor.account_id:
            raise ServiceError(
                "INVALID_PAYLOAD", "A customer cannot select themselves as executor", 400, {}
            )
        if task["status"] == TASK_CLOSED:
            raise ServiceError("INVALID_STATUS", "Task is closed", 409, {"status": task["status"]})

        existing = self._store.get_assignment_by_pair(task_id, executor_id)
        if existing is not None:
            if existing["status"] in ASSIGNMENT_TERMINAL_STATUSES:
                raise ServiceError(
                    "ALREADY_SELECTED",
                    "This executor was already selected for the task once",
                    409,
                    {"assignment_id": existing["assignment_id"], "status": existing["status"]},
                )
            return existing, False

        if self._sanctions.is_banned(executor_id):
            raise ServiceError(
                "EXECUTOR_BANNED", "Executor is banned", 409, {"executor_id": executor_id}
            )

        assigned = task["assigned_executor_ids"]
        if executor_id not in assigned and len(assigned) >= int(task["max_executors"]):
            raise ServiceError(
                "NO_SLOTS",
                "Task has no free executor slots",
                409,
                {"max_executors": task["max_executors"]},
            )

        self._escrow.freeze(
            task_id, executor_id, task["customer_id"], int(task["budget_amount"]), now=moment
        )

        timestamp = to_iso(moment)
        contract = self._store.insert_contract_if_absent(
            {
                "contract_id": f"ctr-{uuid.uuid4()}",
                "task_id": task_id,
                "customer_id": task["customer_id"],
                "executor_id": executor_id,
                "escrow_amount": int(task["budget_amount"]),
                "status": CONTRACT_ACTIVE,
                "created_at": timestamp,
                "updated_at": timestamp,
            }
        )
        self._escrow.freeze(
            task_id,
            executor_id,
            task["customer_id"],
            int(task["budget_amount"]),
            contract_id=contract["contract_id"],
            now=moment,
        )

        assignment = self._store.insert_assignment_if_absent(
            {
                "assignment_id": f"asg-{uuid.uuid4()}",
                "task_id": task_id,
                "executor_id": executor_id,
                "contract_id": contract["contract_id"],
                "status": PENDING_START,
                "assigned_at": timestamp,
                "start_deadline_at": add_ms(moment, self._windows.start_window_ms),
                "created_at": timestamp,
                "updated_at": timestamp,
            }
        )
        self._store.add_task_executor(task_id, executor_id, timestamp)

        get_logger(__name__).info(
            "Executor selected",
            extra={
                "task_id": task_id,
                "executor_id": executor_id,
                "assignment_id": assignment["assignment_id"],
                "contract_id": contract["contract_id"],
            },
        )
        self._dispatcher.emit(
            OutboundEvent(
                events.ASSIGNMENT_SELECTED,
                executor_id,
                "You were selected as executor. Start work before the start deadline.",
                {
                    "task_id": task_id,
                    "assignment_id": assignment["assignment_id"],
                    "contract_id": contract["contract_id"],
                    "start_deadline_at": assignment["start_deadline_at"],
                },
            )
        )
        self._aggregator.recompute_quietly(task_id, moment)
        return assignment, True


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
