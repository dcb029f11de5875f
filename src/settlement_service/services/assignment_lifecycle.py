"""Assignment lifecycle: executor and customer commands plus deadline-driven transitions."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import ServiceError
from settlement_service.logging import get_logger
from settlement_service.services import events
from settlement_service.services.actor import ARBITER, CUSTOMER, EXECUTOR, Actor, require_role
from settlement_service.services.events import OutboundEvent
from settlement_service.services.statuses import (
    ACCEPTED,
    ASSIGNMENT_ACTIVE_STATUSES,
    CANCELLED_BY_CUSTOMER,
    CONTRACT_ACTIVE,
    CONTRACT_APPROVED,
    CONTRACT_CANCELLED,
    CONTRACT_DISPUTED,
    CONTRACT_OPEN_STATUSES,
    CONTRACT_REVISION_REQUESTED,
    CONTRACT_SUBMITTED,
    CONTRACT_TERMINAL_STATUSES,
    DISPUTE_OPENED,
    IN_PROGRESS,
    NO_START_VIOLATION,
    NO_SUBMIT_VIOLATION,
    OVERDUE,
    PAUSE_REQUESTED,
    PAUSED,
    PENDING_START,
    REMOVED_AUTO,
    SUBMITTED,
)
from settlement_service.services.timestamps import add_ms, ms_between, parse_iso, to_iso, utc_now

if TYPE_CHECKING:
    from settlement_service.config import LifecycleConfig
    from settlement_service.services.escrow_ledger import EscrowLedger
    from settlement_service.services.events import EventDispatcher
    from settlement_service.services.sanctions import Sanction, SanctionsEngine
    from settlement_service.services.status_aggregator import StatusAggregator
    from settlement_service.services.store import SettlementStore

PAUSE_REASONS = frozenset({"illness", "family", "force_majeure"})
MAX_PAUSE_COMMENT_LENGTH = 2000
MAX_REVISION_MESSAGE_LENGTH = 5000
LIST_LIMIT = 500

_HOUR_MS = 60 * 60 * 1000


@dataclass(frozen=True)
class LifecycleWindows:
    """Lifecycle durations in milliseconds."""

    start_window_ms: int = 12 * _HOUR_MS
    execution_window_ms: int = 24 * _HOUR_MS
    pause_min_ms: int = 5 * 60 * 1000
    pause_max_ms: int = 24 * _HOUR_MS
    pause_auto_accept_ms: int = 12 * _HOUR_MS

    @classmethod
    def from_config(cls, config: LifecycleConfig) -> LifecycleWindows:
        """Build windows from the ``lifecycle`` configuration section."""
        return cls(
            start_window_ms=config.start_window_seconds * 1000,
            execution_window_ms=config.execution_window_seconds * 1000,
            pause_min_ms=config.pause_min_seconds * 1000,
            pause_max_ms=config.pause_max_seconds * 1000,
            pause_auto_accept_ms=config.pause_auto_accept_seconds * 1000,
        )

    @property
    def extension_cap_ms(self) -> int:
        """Total deadline extension a single assignment can ever receive."""
        return min(self.pause_max_ms, self.execution_window_ms // 2)

    def clamp_pause(self, duration_ms: int) -> int:
        """Clamp a requested pause duration into the allowed range."""
        return max(self.pause_min_ms, min(self.pause_max_ms, duration_ms))


def compute_pause_extension(
    previous_extension_ms: int,
    requested_at: datetime,
    decided_at: datetime,
    requested_duration_ms: int,
    cap_ms: int,
) -> int:
    """
    Extension granted when a pause is accepted.

    The executor is credited for the time the request waited for a decision
    plus the requested duration, limited by what is left of ``cap_ms``.
    """
    remaining = max(0, cap_ms - previous_extension_ms)
    wait_ms = max(0, ms_between(requested_at, decided_at))
    return min(remaining, wait_ms + requested_duration_ms)


class AssignmentLifecycle:
    """
    Drives assignments through their lifecycle.

    Each transition is a single compare-and-transition on the assignment
    status. When the guard no longer holds the command is a no-op that
    returns the current assignment. Side effects (contract sync, escrow,
    sanctions, notifications, task status) run only for the caller that won
    the transition.
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

    @property
    def windows(self) -> LifecycleWindows:
        """Configured lifecycle durations."""
        return self._windows

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_assignment(self, actor: Actor, assignment_id: str) -> dict[str, Any]:
        """Return an assignment visible to the actor."""
        assignment = self._require_assignment(assignment_id)
        if actor.role == ARBITER:
            return assignment
        if actor.role == EXECUTOR and assignment["executor_id"] == actor.account_id:
            return assignment
        if actor.role == CUSTOMER and self._task_customer_id(assignment) == actor.account_id:
            return assignment
        raise ServiceError("FORBIDDEN", "Assignment is not visible to this account", 403, {})

    def find_assignment_id(self, task_id: str, executor_id: str) -> str:
        """Resolve a task/executor pair to its assignment id."""
        assignment = self._store.get_assignment_by_pair(task_id, executor_id)
        if assignment is None:
            raise ServiceError(
                "ASSIGNMENT_NOT_FOUND",
                "No assignment exists for this task and executor",
                404,
                {"task_id": task_id, "executor_id": executor_id},
            )
        return str(assignment["assignment_id"])

    def list_assignments(
        self,
        actor: Actor,
        task_id: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List the assignments an actor takes part in; other roles see nothing."""
        if actor.role == EXECUTOR:
            return self._store.list_assignments(
                executor_id=actor.account_id, task_id=task_id, status=status, limit=LIST_LIMIT
            )
        if actor.role == CUSTOMER:
            return self._store.list_assignments(
                customer_id=actor.account_id, task_id=task_id, status=status, limit=LIST_LIMIT
            )
        return []

    def get_contract(self, actor: Actor, contract_id: str) -> dict[str, Any]:
        """Return a contract visible to the actor."""
        contract = self._require_contract(contract_id)
        if actor.role == ARBITER or actor.account_id in (
            contract["customer_id"],
            contract["executor_id"],
        ):
            return contract
        raise ServiceError("FORBIDDEN", "Contract is not visible to this account", 403, {})

    def list_contracts(self, actor: Actor) -> list[dict[str, Any]]:
        """Executors see their contracts, customers those of their tasks, others nothing."""
        if actor.role == EXECUTOR:
            return self._store.list_contracts(executor_id=actor.account_id, limit=LIST_LIMIT)
        if actor.role == CUSTOMER:
            return self._store.list_contracts(customer_id=actor.account_id, limit=LIST_LIMIT)
        return []

    # ------------------------------------------------------------------
    # Executor commands
    # ------------------------------------------------------------------

    async def start(
        self, actor: Actor, assignment_id: str, now: datetime | None = None
    ) -> dict[str, Any]:
        """pending_start -> in_progress; opens the execution window."""
        moment = now if now is not None else utc_now()
        assignment = self._load_for_executor(actor, assignment_id)
        if assignment["status"] != PENDING_START:
            return assignment

        timestamp = to_iso(moment)
        base_deadline = add_ms(moment, self._windows.execution_window_ms)
        won = self._store.compare_and_transition(
            "assignments",
            assignment_id,
            PENDING_START,
            {
                "status": IN_PROGRESS,
                "started_at": timestamp,
                "execution_base_deadline_at": base_deadline,
                "execution_extension_ms": 0,
                "execution_deadline_at": base_deadline,
                "updated_at": timestamp,
            },
        )
        current = self._require_assignment(assignment_id)
        if not won:
            return current

        self._log_transition(current, PENDING_START)
        self._notify_customer(current, events.ASSIGNMENT_STARTED, "The executor started work.")
        self._aggregator.recompute_quietly(current["task_id"], moment)
        return current

    async def request_pause(
        self,
        actor: Actor,
        assignment_id: str,
        reason_id: object,
        duration_ms: object,
        comment: object = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        in_progress -> pause_requested, once per assignment.

        Once the pause is used, further requests return the assignment
        unchanged without looking at the payload.

        Raises:
            ServiceError: INVALID_REASON, INVALID_DURATION, INVALID_PAYLOAD
        """
        moment = now if now is not None else utc_now()
        assignment = self._load_for_executor(actor, assignment_id)
        if assignment["status"] != IN_PROGRESS or assignment["pause_used"]:
            return assignment
        reason = _normalize_pause_reason(reason_id)
        duration = _normalize_duration(duration_ms)
        note = _normalize_comment(comment)

        timestamp = to_iso(moment)
        won = self._store.compare_and_transition(
            "assignments",
            assignment_id,
            IN_PROGRESS,
            {
                "status": PAUSE_REQUESTED,
                "pause_used": True,
                "pause_requested_at": timestamp,
                "pause_auto_accept_at": add_ms(moment, self._windows.pause_auto_accept_ms),
                "pause_reason_id": reason,
                "pause_comment": note,
                "pause_requested_duration_ms": self._windows.clamp_pause(duration),
                "pause_decision": None,
                "pause_decided_at": None,
                "paused_at": None,
                "paused_until": None,
                "updated_at": timestamp,
            },
            expected_version=assignment["version"],
        )
        current = self._require_assignment(assignment_id)
        if not won:
            return current

        self._log_transition(current, IN_PROGRESS)
        self._notify_customer(
            current,
            events.PAUSE_REQUESTED,
            "The executor requested a pause.",
            {"reason_id": reason, "comment": note},
        )
        return current

    async def submit(
        self, actor: Actor, assignment_id: str, now: datetime | None = None
    ) -> dict[str, Any]:
        """in_progress | overdue -> submitted; the contract follows."""
        moment = now if now is not None else utc_now()
        assignment = self._load_for_executor(actor, assignment_id)
        if assignment["status"] not in (IN_PROGRESS, OVERDUE):
            return assignment

        timestamp = to_iso(moment)
        won = self._store.compare_and_transition(
            "assignments",
            assignment_id,
            (IN_PROGRESS, OVERDUE),
            {"status": SUBMITTED, "submitted_at": timestamp, "updated_at": timestamp},
        )
        current = self._require_assignment(assignment_id)
        if not won:
            return current

        self._log_transition(current, assignment["status"])
        self._sync_contract(
            current, (CONTRACT_ACTIVE, CONTRACT_REVISION_REQUESTED), CONTRACT_SUBMITTED, timestamp
        )
        self._notify_customer(current, events.ASSIGNMENT_SUBMITTED, "The executor submitted work.")
        self._aggregator.recompute_quietly(current["task_id"], moment)
        return current

    # ------------------------------------------------------------------
    # Customer commands
    # ------------------------------------------------------------------

    async def accept_pause(
        self, actor: Actor, assignment_id: str, now: datetime | None = None
    ) -> dict[str, Any]:
        """pause_requested -> paused; extends the execution deadline."""
        moment = now if now is not None else utc_now()
        assignment = self._load_for_customer(actor, assignment_id)
        current = self._grant_pause(assignment, moment, decision="accepted")
        if current is not None:
            self._notify_executor(
                current, events.PAUSE_ACCEPTED, "The customer accepted the pause."
            )
            return current
        return self._require_assignment(assignment_id)

    async def reject_pause(
        self,
        actor: Actor,
        assignment_id: str,
        message: object = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """pause_requested -> in_progress; the deadline is unchanged."""
        note = _normalize_comment(message)
        moment = now if now is not None else utc_now()
        assignment = self._load_for_customer(actor, assignment_id)
        if assignment["status"] != PAUSE_REQUESTED:
            return assignment

        timestamp = to_iso(moment)
        won = self._store.compare_and_transition(
            "assignments",
            assignment_id,
            PAUSE_REQUESTED,
            {
                "status": IN_PROGRESS,
                "pause_decision": "rejected",
                "pause_decided_at": timestamp,
                "updated_at": timestamp,
            },
        )
        current = self._require_assignment(assignment_id)
        if not won:
            return current

        self._log_transition(current, PAUSE_REQUESTED)
        self._notify_executor(
            current,
            events.PAUSE_REJECTED,
            "The customer rejected the pause.",
            {"message": note},
        )
        return current

    async def accept(
        self, actor: Actor, assignment_id: str, now: datetime | None = None
    ) -> dict[str, Any]:
        """
        submitted | dispute_opened -> accepted.

        The contract is approved and the escrow released to the executor.
        """
        moment = now if now is not None else utc_now()
        assignment = self._load_for_customer(actor, assignment_id)
        if assignment["status"] not in (SUBMITTED, DISPUTE_OPENED):
            return assignment

        timestamp = to_iso(moment)
        won = self._store.compare_and_transition(
            "assignments",
            assignment_id,
            (SUBMITTED, DISPUTE_OPENED),
            {"status": ACCEPTED, "accepted_at": timestamp, "updated_at": timestamp},
        )
        current = self._require_assignment(assignment_id)
        if not won:
            return current

        self._log_transition(current, assignment["status"])
        self._sync_contract(
            current,
            (CONTRACT_ACTIVE, CONTRACT_SUBMITTED, CONTRACT_DISPUTED),
            CONTRACT_APPROVED,
            timestamp,
        )
        self._settle_quietly("release", current, moment)
        self._notify_executor(
            current, events.ASSIGNMENT_ACCEPTED, "The customer accepted your work."
        )
        self._aggregator.recompute_quietly(current["task_id"], moment)
        return current

    async def cancel_contract(
        self, actor: Actor, contract_id: str, now: datetime | None = None
    ) -> dict[str, Any]:
        """
        Cancel a contract on behalf of its customer.

        The assignment becomes cancelled_by_customer, the executor leaves the
        task, and the escrow is refunded.

        Raises:
            ServiceError: FORBIDDEN, CONTRACT_NOT_FOUND, INVALID_STATUS
        """
        require_role(actor, CUSTOMER)
        moment = now if now is not None else utc_now()
        contract = self._require_contract(contract_id)
        if contract["customer_id"] != actor.account_id:
            raise ServiceError("FORBIDDEN", "Only the contract's customer may cancel it", 403, {})
        if contract["status"] == CONTRACT_CANCELLED:
            return contract
        if contract["status"] in CONTRACT_TERMINAL_STATUSES:
            raise ServiceError(
                "INVALID_STATUS",
                f"Contract cannot be cancelled from status {contract['status']}",
                409,
                {"status": contract["status"]},
            )

        timestamp = to_iso(moment)
        won = self._store.compare_and_transition(
            "contracts",
            contract_id,
            CONTRACT_OPEN_STATUSES,
            {"status": CONTRACT_CANCELLED, "updated_at": timestamp},
        )
        current = self._require_contract(contract_id)
        if not won:
            if current["status"] == CONTRACT_CANCELLED:
                return current
            raise ServiceError(
                "INVALID_STATUS",
                f"Contract cannot be cancelled from status {current['status']}",
                409,
                {"status": current["status"]},
            )

        task_id = current["task_id"]
        executor_id = current["executor_id"]
        assignment = self._store.get_assignment_by_pair(task_id, executor_id)
        if assignment is not None:
            cancelled = self._store.compare_and_transition(
                "assignments",
                assignment["assignment_id"],
                ASSIGNMENT_ACTIVE_STATUSES,
                {
                    "status": CANCELLED_BY_CUSTOMER,
                    "cancelled_at": timestamp,
                    "updated_at": timestamp,
                },
            )
            if cancelled:
                self._log_transition(
                    self._require_assignment(assignment["assignment_id"]), assignment["status"]
                )

        self._store.remove_task_executor(task_id, executor_id)
        self._settle_quietly("refund", {"task_id": task_id, "executor_id": executor_id}, moment)
        self._dispatcher.emit_many(
            [
                OutboundEvent(
                    events.CONTRACT_CANCELLED,
                    executor_id,
                    "The customer cancelled the contract.",
                    {"task_id": task_id, "contract_id": contract_id},
                ),
                OutboundEvent(
                    events.SELECTION_REJECTED,
                    executor_id,
                    "Your selection for this task was withdrawn.",
                    {"task_id": task_id, "contract_id": contract_id},
                ),
            ]
        )
        self._aggregator.recompute_quietly(task_id, moment)
        get_logger(__name__).info(
            "Contract cancelled",
            extra={"contract_id": contract_id, "task_id": task_id, "executor_id": executor_id},
        )
        return current

    async def request_revision(
        self,
        actor: Actor,
        contract_id: str,
        message: object,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Send submitted work back to the executor.

        The contract moves submitted -> revision_requested and uses one of its
        included revisions. The assignment returns to in_progress with a fresh
        execution window.

        Raises:
            ServiceError: FORBIDDEN, MISSING_MESSAGE, CONTRACT_NOT_FOUND,
                INVALID_STATUS, REVISION_LIMIT
        """
        require_role(actor, CUSTOMER)
        note = _normalize_revision_message(message)
        moment = now if now is not None else utc_now()
        contract = self._require_contract(contract_id)
        if contract["customer_id"] != actor.account_id:
            raise ServiceError(
                "FORBIDDEN", "Only the contract's customer may request a revision", 403, {}
            )
        if contract["status"] != CONTRACT_SUBMITTED:
            raise _invalid_revision_status(contract["status"])
        used = int(contract["revision_used"])
        included = int(contract["revision_included"])
        if used >= included:
            raise ServiceError(
                "REVISION_LIMIT",
                "All included revisions have been used",
                409,
                {"revision_used": used, "revision_included": included},
            )

        timestamp = to_iso(moment)
        won = self._store.compare_and_transition(
            "contracts",
            contract_id,
            CONTRACT_SUBMITTED,
            {
                "status": CONTRACT_REVISION_REQUESTED,
                "revision_used": used + 1,
                "last_revision_message": note,
                "last_revision_requested_at": timestamp,
                "updated_at": timestamp,
            },
            expected_version=contract["version"],
        )
        current = self._require_contract(contract_id)
        if not won:
            raise _invalid_revision_status(current["status"])

        task_id = current["task_id"]
        assignment = self._store.get_assignment_by_pair(task_id, current["executor_id"])
        if assignment is not None:
            self._reopen_for_revision(assignment, moment)
            self._notify_executor(
                assignment,
                events.REVISION_REQUESTED,
                "The customer sent the work back for revision.",
                {"contract_id": contract_id, "message": note},
            )
        self._aggregator.recompute_quietly(task_id, moment)
        get_logger(__name__).info(
            "Revision requested",
            extra={
                "contract_id": contract_id,
                "task_id": task_id,
                "revision_used": current["revision_used"],
            },
        )
        return current

    # ------------------------------------------------------------------
    # Scheduler transitions
    # ------------------------------------------------------------------

    def complete_pending_settlements(
        self, limit: int, now: datetime | None = None
    ) -> tuple[int, int]:
        """Retry escrow settlements whose credits did not all post."""
        return self._escrow.retry_unsettled(limit, now)

    async def expire_no_start(
        self, assignment: dict[str, Any], now: datetime | None = None
    ) -> bool:
        """
        pending_start -> removed_auto once the start deadline has passed.

        Records a no-start violation with sanctions, removes the executor from
        the task, cancels the contract and refunds the escrow.

        Returns:
            True if this call performed the removal
        """
        moment = now if now is not None else utc_now()
        deadline = parse_iso(assignment["start_deadline_at"])
        if deadline is None or moment < deadline:
            return False

        assignment_id = assignment["assignment_id"]
        task_id = assignment["task_id"]
        executor_id = assignment["executor_id"]
        timestamp = to_iso(moment)

        won = self._store.compare_and_transition(
            "assignments",
            assignment_id,
            PENDING_START,
            {"status": REMOVED_AUTO, "removed_at": timestamp, "updated_at": timestamp},
        )
        if not won:
            return False
        current = self._require_assignment(assignment_id)
        self._log_transition(current, PENDING_START)

        violation, sanction = self._sanction_quietly(current, NO_START_VIOLATION, moment)

        self._store.remove_task_executor(task_id, executor_id)
        contract = self._store.get_contract_by_pair(task_id, executor_id)
        if contract is not None:
            self._store.compare_and_transition(
                "contracts",
                contract["contract_id"],
                CONTRACT_OPEN_STATUSES,
                {"status": CONTRACT_CANCELLED, "updated_at": timestamp},
            )
        self._settle_quietly("refund", current, moment)

        meta = {
            "task_id": task_id,
            "assignment_id": assignment_id,
            "violation_id": violation["violation_id"] if violation is not None else None,
            "violation_type": NO_START_VIOLATION,
        }
        sanction_meta = sanction.to_dict() if sanction is not None else None
        self._dispatcher.emit_many(
            [
                OutboundEvent(
                    events.ASSIGNMENT_REMOVED,
                    executor_id,
                    "Violation: work was not started within the start window; "
                    "the assignment was removed.",
                    {**meta, "sanction": sanction_meta},
                ),
                OutboundEvent(
                    events.SELECTION_REJECTED,
                    executor_id,
                    "Your selection for this task was withdrawn.",
                    {"task_id": task_id},
                ),
            ]
        )
        self._notify_customer(
            current,
            events.ASSIGNMENT_REMOVED,
            "The executor did not start in time; the assignment was removed automatically.",
            meta,
        )
        self._aggregator.recompute_quietly(task_id, moment)
        return True

    async def mark_overdue(self, assignment: dict[str, Any], now: datetime | None = None) -> bool:
        """
        in_progress -> overdue once the execution deadline has passed.

        Records a no-submit violation with sanctions. No money moves and the
        executor may still submit.
        """
        moment = now if now is not None else utc_now()
        deadline = parse_iso(assignment["execution_deadline_at"])
        if deadline is None or moment < deadline:
            return False

        assignment_id = assignment["assignment_id"]
        timestamp = to_iso(moment)
        won = self._store.compare_and_transition(
            "assignments",
            assignment_id,
            IN_PROGRESS,
            {"status": OVERDUE, "overdue_at": timestamp, "updated_at": timestamp},
        )
        if not won:
            return False
        current = self._require_assignment(assignment_id)
        self._log_transition(current, IN_PROGRESS)

        violation, sanction = self._sanction_quietly(current, NO_SUBMIT_VIOLATION, moment)
        meta = {
            "task_id": current["task_id"],
            "assignment_id": assignment_id,
            "violation_id": violation["violation_id"] if violation is not None else None,
            "violation_type": NO_SUBMIT_VIOLATION,
        }
        self._notify_executor(
            current,
            events.ASSIGNMENT_OVERDUE,
            "Violation: work was not submitted before the execution deadline.",
            {**meta, "sanction": sanction.to_dict() if sanction is not None else None},
        )
        self._notify_customer(
            current, events.ASSIGNMENT_OVERDUE, "The executor missed the execution deadline.", meta
        )
        return True

    async def auto_accept_pause(
        self, assignment: dict[str, Any], now: datetime | None = None
    ) -> bool:
        """Accept a pause request the customer left unanswered past its auto-accept time."""
        moment = now if now is not None else utc_now()
        auto_accept_at = parse_iso(assignment["pause_auto_accept_at"])
        if auto_accept_at is None or moment < auto_accept_at:
            return False

        current = self._grant_pause(assignment, moment, decision="auto_accepted")
        if current is None:
            return False
        self._notify_executor(
            current, events.PAUSE_AUTO_ACCEPTED, "Your pause request was accepted automatically."
        )
        self._notify_customer(
            current,
            events.PAUSE_AUTO_ACCEPTED,
            "The executor's pause request was accepted automatically.",
        )
        return True

    async def resume_paused(self, assignment: dict[str, Any], now: datetime | None = None) -> bool:
        """paused -> in_progress once the pause has run out."""
        moment = now if now is not None else utc_now()
        paused_until = parse_iso(assignment["paused_until"])
        if paused_until is None or moment < paused_until:
            return False

        assignment_id = assignment["assignment_id"]
        won = self._store.compare_and_transition(
            "assignments",
            assignment_id,
            PAUSED,
            {"status": IN_PROGRESS, "updated_at": to_iso(moment)},
        )
        if not won:
            return False
        current = self._require_assignment(assignment_id)
        self._log_transition(current, PAUSED)
        self._notify_executor(current, events.PAUSE_ENDED, "Your pause is over; work resumes.")
        return True

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _grant_pause(
        self, assignment: dict[str, Any], moment: datetime, decision: str
    ) -> dict[str, Any] | None:
        """Move pause_requested -> paused and extend the deadline; None if the guard failed."""
        if assignment["status"] != PAUSE_REQUESTED:
            return None
        requested_at = parse_iso(assignment["pause_requested_at"])
        base_deadline = parse_iso(assignment["execution_base_deadline_at"])
        duration = assignment["pause_requested_duration_ms"]
        if requested_at is None or base_deadline is None or not duration:
            return None

        previous = int(assignment["execution_extension_ms"] or 0)
        added = compute_pause_extension(
            previous, requested_at, moment, int(duration), self._windows.extension_cap_ms
        )
        extension = previous + added
        timestamp = to_iso(moment)

        won = self._store.compare_and_transition(
            "assignments",
            assignment["assignment_id"],
            PAUSE_REQUESTED,
            {
                "status": PAUSED,
                "pause_decision": decision,
                "pause_decided_at": timestamp,
                "paused_at": timestamp,
                "paused_until": add_ms(moment, int(duration)),
                "execution_extension_ms": extension,
                "execution_deadline_at": add_ms(base_deadline, extension),
                "updated_at": timestamp,
            },
            expected_version=assignment["version"],
        )
        if not won:
            return None
        current = self._require_assignment(assignment["assignment_id"])
        self._log_transition(current, PAUSE_REQUESTED)
        return current

    def _reopen_for_revision(self, assignment: dict[str, Any], moment: datetime) -> None:
        timestamp = to_iso(moment)
        window_ms = self._windows.execution_window_ms
        extension_ms = int(assignment["execution_extension_ms"])
        reopened = self._store.compare_and_transition(
            "assignments",
            assignment["assignment_id"],
            SUBMITTED,
            {
                "status": IN_PROGRESS,
                "execution_base_deadline_at": add_ms(moment, window_ms),
                "execution_deadline_at": add_ms(moment, window_ms + extension_ms),
                "updated_at": timestamp,
            },
        )
        if reopened:
            self._log_transition(self._require_assignment(assignment["assignment_id"]), SUBMITTED)
        else:
            get_logger(__name__).warning(
                "Assignment was not submitted when a revision was requested",
                extra={
                    "assignment_id": assignment["assignment_id"],
                    "status": assignment["status"],
                },
            )

    def _sanction_quietly(
        self, assignment: dict[str, Any], violation_type: str, moment: datetime
    ) -> tuple[dict[str, Any] | None, Sanction | None]:
        try:
            return self._sanctions.record_and_sanction(
                assignment["executor_id"],
                violation_type,
                assignment["task_id"],
                assignment["assignment_id"],
                moment,
            )
        except Exception:
            get_logger(__name__).exception(
                "Violation could not be recorded",
                extra={
                    "assignment_id": assignment["assignment_id"],
                    "violation_type": violation_type,
                },
            )
            return None, None

    def _settle_quietly(self, operation: str, assignment: dict[str, Any], moment: datetime) -> None:
        task_id = assignment["task_id"]
        executor_id = assignment["executor_id"]
        try:
            if operation == "release":
                self._escrow.release(task_id, executor_id, moment)
            else:
                self._escrow.refund(task_id, executor_id, moment)
        except ServiceError as exc:
            if exc.error == "ESCROW_NOT_FOUND":
                return
            get_logger(__name__).error(
                "Escrow settlement failed",
                extra={
                    "operation": operation,
                    "task_id": task_id,
                    "executor_id": executor_id,
                    "error_code": exc.error,
                },
            )
        except Exception:
            get_logger(__name__).exception(
                "Escrow settlement failed",
                extra={"operation": operation, "task_id": task_id, "executor_id": executor_id},
            )

    def _sync_contract(
        self,
        assignment: dict[str, Any],
        from_status: str | tuple[str, ...],
        to_status: str,
        timestamp: str,
    ) -> None:
        contract_id = assignment.get("contract_id")
        if not contract_id:
            return
        try:
            self._store.compare_and_transition(
                "contracts",
                contract_id,
                from_status,
                {"status": to_status, "updated_at": timestamp},
            )
        except Exception:
            get_logger(__name__).warning(
                "Contract status sync failed",
                extra={"contract_id": contract_id, "to_status": to_status},
                exc_info=True,
            )

    def _require_assignment(self, assignment_id: str) -> dict[str, Any]:
        assignment = self._store.get_assignment(assignment_id)
        if assignment is None:
            raise ServiceError(
                "ASSIGNMENT_NOT_FOUND",
                "Assignment not found",
                404,
                {"assignment_id": assignment_id},
            )
        return assignment

    def _require_contract(self, contract_id: str) -> dict[str, Any]:
        contract = self._store.get_contract(contract_id)
        if contract is None:
            raise ServiceError(
                "CONTRACT_NOT_FOUND",
                "Contract not found",
                404,
                {"contract_id": contract_id},
            )
        return contract

    def _load_for_executor(self, actor: Actor, assignment_id: str) -> dict[str, Any]:
        require_role(actor, EXECUTOR)
        assignment = self._require_assignment(assignment_id)
        if assignment["executor_id"] != actor.account_id:
            raise ServiceError("FORBIDDEN", "Only the assigned executor may do this", 403, {})
        return assignment

    def _load_for_customer(self, actor: Actor, assignment_id: str) -> dict[str, Any]:
        require_role(actor, CUSTOMER)
        assignment = self._require_assignment(assignment_id)
        if self._task_customer_id(assignment) != actor.account_id:
            raise ServiceError("FORBIDDEN", "Only the task's customer may do this", 403, {})
        return assignment

    def _task_customer_id(self, assignment: dict[str, Any]) -> str | None:
        task = self._store.get_task(assignment["task_id"])
        return str(task["customer_id"]) if task is not None else None

    def _notify_customer(
        self,
        assignment: dict[str, Any],
        kind: str,
        text: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        customer_id = self._task_customer_id(assignment)
        if customer_id is None:
            return
        self._dispatcher.emit(
            OutboundEvent(
                kind,
                customer_id,
                text,
                {
                    "task_id": assignment["task_id"],
                    "assignment_id": assignment["assignment_id"],
                    "executor_id": assignment["executor_id"],
                    **(meta or {}),
                },
            )
        )

    def _notify_executor(
        self,
        assignment: dict[str, Any],
        kind: str,
        text: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        self._dispatcher.emit(
            OutboundEvent(
                kind,
                assignment["executor_id"],
                text,
                {
                    "task_id": assignment["task_id"],
                    "assignment_id": assignment["assignment_id"],
                    **(meta or {}),
                },
            )
        )

    @staticmethod
    def _log_transition(assignment: dict[str, Any], from_status: str) -> None:
        get_logger(__name__).info(
            "Assignment transition",
            extra={
                "assignment_id": assignment["assignment_id"],
                "task_id": assignment["task_id"],
                "executor_id": assignment["executor_id"],
                "from_status": from_status,
                "to_status": assignment["status"],
            },
        )


def _normalize_pause_reason(value: object) -> str:
    reason = value.strip().lower() if isinstance(value, str) else ""
    if reason not in PAUSE_REASONS:
        raise ServiceError(
            "INVALID_REASON",
            "reason_id must be one of: " + ", ".join(sorted(PAUSE_REASONS)),
            400,
            {"allowed": sorted(PAUSE_REASONS)},
        )
    return reason


def _normalize_duration(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ServiceError("INVALID_DURATION", "duration_ms must be a positive number", 400, {})
    duration = int(value)
    if duration <= 0:
        raise ServiceError("INVALID_DURATION", "duration_ms must be a positive number", 400, {})
    return duration


def _normalize_comment(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ServiceError("INVALID_PAYLOAD", "Comment must be a string", 400, {})
    text = value.strip()
    if len(text) > MAX_PAUSE_COMMENT_LENGTH:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Comment must be at most {MAX_PAUSE_COMMENT_LENGTH} characters",
            400,
            {},
        )
    return text or None


def _normalize_revision_message(value: object) -> str:
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise ServiceError("MISSING_MESSAGE", "A revision message is required", 400, {})
    if len(text) > MAX_REVISION_MESSAGE_LENGTH:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"Message must be at most {MAX_REVISION_MESSAGE_LENGTH} characters",
            400,
            {},
        )
    return text


def _invalid_revision_status(status: str) -> ServiceError:
    return ServiceError(
        "INVALID_STATUS",
        f"Revision cannot be requested from status {status}",
        409,
        {"status": status},
    )
