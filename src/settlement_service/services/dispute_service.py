"""Dispute arbitration over a contract, ending in a locked escrow decision."""

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
    ACCEPTED,
    ASSIGNMENT_ACTIVE_STATUSES,
    CONTRACT_DISPUTED,
    CONTRACT_OPEN_STATUSES,
    CONTRACT_RESOLVED,
    CONTRACT_TERMINAL_STATUSES,
    DISPUTABLE_ASSIGNMENT_STATUSES,
    DISPUTE_CLOSED,
    DISPUTE_DECIDED,
    DISPUTE_IN_REVIEW,
    DISPUTE_NEED_MORE_INFO,
    DISPUTE_OPEN,
    DISPUTE_OPENED,
    ESCROW_FROZEN,
)
from settlement_service.services.store import DuplicateDisputeError
from settlement_service.services.timestamps import add_ms, to_iso, utc_now

if TYPE_CHECKING:
    from settlement_service.services.escrow_ledger import EscrowLedger
    from settlement_service.services.events import EventDispatcher
    from settlement_service.services.status_aggregator import StatusAggregator
    from settlement_service.services.store import SettlementStore

PAYOUT_EXECUTOR = "executor"
PAYOUT_CUSTOMER = "customer"
PAYOUT_SPLIT = "split"
PAYOUT_PARTIAL = "partial"

DEFAULT_CATEGORY_ID = "universal"
DEFAULT_REASON_ID = "other"

MESSAGE_KIND_SYSTEM = "system"
MESSAGE_KIND_USER = "user"
MORE_INFO_TEXT = "The arbiter requested more information."

LIST_LIMIT = 500

_TAKEABLE_STATUSES = (DISPUTE_OPEN, DISPUTE_NEED_MORE_INFO, DISPUTE_IN_REVIEW)


class DisputeService:
    """
    Runs disputes through open, in_review, need_more_info, decided and closed.

    Every write is a compare-and-swap on the dispute's status and version. A
    dispute whose decision is locked only accepts ``close``; other commands
    against it return the stored document unchanged.
    """

    def __init__(
        self,
        store: SettlementStore,
        escrow: EscrowLedger,
        aggregator: StatusAggregator,
        dispatcher: EventDispatcher,
        sla_seconds: int,
        max_detail_length: int,
    ) -> None:
        self._store = store
        self._escrow = escrow
        self._aggregator = aggregator
        self._dispatcher = dispatcher
        self._sla_ms = sla_seconds * 1000
        self._max_detail_length = max_detail_length

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_dispute(self, actor: Actor, dispute_id: str) -> dict[str, Any]:
        """Return a dispute visible to the actor."""
        dispute = self._require_dispute(dispute_id)
        if not _can_view(actor, dispute):
            raise ServiceError("FORBIDDEN", "Dispute is not visible to this account", 403, {})
        return dispute

    def list_disputes(
        self,
        actor: Actor,
        status: str | None = None,
        contract_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """List disputes visible to the actor, most recently updated first."""
        if contract_id is not None:
            dispute = self._store.get_dispute_by_contract(contract_id)
            if dispute is None or not _can_view(actor, dispute):
                return []
            if status is not None and dispute["status"] != status:
                return []
            return [dispute]

        if actor.role == ARBITER:
            return self._store.list_disputes(status=status, limit=LIST_LIMIT)
        if actor.role in (CUSTOMER, EXECUTOR):
            return self._store.list_disputes(
                party_id=actor.account_id, status=status, limit=LIST_LIMIT
            )
        return []

    def list_messages(self, actor: Actor, dispute_id: str) -> list[dict[str, Any]]:
        """List the dispute's message thread."""
        dispute = self.get_dispute(actor, dispute_id)
        return self._store.list_dispute_messages(dispute["dispute_id"])

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        actor: Actor,
        contract_id: object,
        reason: object = None,
        now: datetime | None = None,
    ) -> tuple[dict[str, Any], bool]:
        """
        Open a dispute over a contract, at most once per contract.

        Returns:
            (dispute, created) where ``created`` is False when the contract
            already had a dispute

        Raises:
            ServiceError: FORBIDDEN, INVALID_PAYLOAD, CONTRACT_NOT_FOUND,
                INVALID_STATUS
        """
        require_role(actor, CUSTOMER, EXECUTOR)
        if not isinstance(contract_id, str) or not contract_id.strip():
            raise ServiceError("INVALID_PAYLOAD", "contract_id must be a non-empty string", 400, {})
        contract_id = contract_id.strip()
        normalized_reason = self._normalize_reason(reason)

        contract = self._store.get_contract(contract_id)
        if contract is None:
            raise ServiceError(
                "CONTRACT_NOT_FOUND", "Contract not found", 404, {"contract_id": contract_id}
            )
        is_customer = actor.role == CUSTOMER and contract["customer_id"] == actor.account_id
        is_executor = actor.role == EXECUTOR and contract["executor_id"] == actor.account_id
        if not is_customer and not is_executor:
            raise ServiceError(
                "FORBIDDEN", "Only a party to the contract may open a dispute", 403, {}
            )

        existing = self._store.get_dispute_by_contract(contract_id)
        if existing is not None:
            return existing, False
        if contract["status"] in CONTRACT_TERMINAL_STATUSES:
            raise ServiceError(
                "INVALID_STATUS",
                f"Cannot dispute a contract in status {contract['status']}",
                409,
                {"status": contract["status"]},
            )

        moment = now if now is not None else utc_now()
        timestamp = to_iso(moment)
        dispute_id = f"dsp-{uuid.uuid4()}"
        try:
            self._store.insert_dispute(
                {
                    "dispute_id": dispute_id,
                    "contract_id": contract_id,
                    "task_id": contract["task_id"],
                    "opened_by_user_id": actor.account_id,
                    "customer_id": contract["customer_id"],
                    "executor_id": contract["executor_id"],
                    "reason": normalized_reason,
                    "status": DISPUTE_OPEN,
                    "assigned_arbiter_id": None,
                    "sla_due_at": add_ms(moment, self._sla_ms),
                    "decision": None,
                    "locked_decision_at": None,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
            )
        except DuplicateDisputeError:
            concurrent = self._store.get_dispute_by_contract(contract_id)
            if concurrent is None:
                raise
            return concurrent, False

        dispute = self._require_dispute(dispute_id)
        logger = get_logger(__name__)
        logger.info(
            "Dispute opened",
            extra={
                "dispute_id": dispute_id,
                "contract_id": contract_id,
                "task_id": contract["task_id"],
                "opened_by": actor.account_id,
            },
        )

        self._store.compare_and_transition(
            "contracts",
            contract_id,
            CONTRACT_OPEN_STATUSES,
            {"status": CONTRACT_DISPUTED, "updated_at": timestamp},
        )
        assignment = self._store.get_assignment_by_pair(
            contract["task_id"], contract["executor_id"]
        )
        if assignment is not None:
            moved = self._store.compare_and_transition(
                "assignments",
                assignment["assignment_id"],
                DISPUTABLE_ASSIGNMENT_STATUSES,
                {"status": DISPUTE_OPENED, "updated_at": timestamp},
            )
            if moved:
                logger.info(
                    "Assignment transition",
                    extra={
                        "assignment_id": assignment["assignment_id"],
                        "task_id": assignment["task_id"],
                        "executor_id": assignment["executor_id"],
                        "from_status": assignment["status"],
                        "to_status": DISPUTE_OPENED,
                    },
                )
        self._aggregator.recompute_quietly(contract["task_id"], moment)

        other_party = contract["executor_id"] if is_customer else contract["customer_id"]
        self._dispatcher.emit(
            OutboundEvent(
                events.DISPUTE_OPENED,
                other_party,
                "A dispute was opened on the task.",
                {
                    "task_id": contract["task_id"],
                    "dispute_id": dispute_id,
                    "contract_id": contract_id,
                    "actor_id": actor.account_id,
                },
            )
        )
        return dispute, True

    async def take_in_work(
        self,
        actor: Actor,
        dispute_id: str,
        expected_version: object = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """open | need_more_info | in_review -> in_review, claimed by the arbiter."""
        require_role(actor, ARBITER)
        version = _normalize_version(expected_version)
        dispute = self._require_dispute(dispute_id)
        if _is_frozen(dispute):
            return dispute
        self._check_arbiter(actor, dispute)
        _check_version(dispute, version)
        if dispute["status"] not in _TAKEABLE_STATUSES:
            return dispute

        timestamp = to_iso(now if now is not None else utc_now())
        return self._write(
            dispute,
            {
                "status": DISPUTE_IN_REVIEW,
                "assigned_arbiter_id": actor.account_id,
                "updated_at": timestamp,
            },
        )

    async def request_more_info(
        self,
        actor: Actor,
        dispute_id: str,
        expected_version: object = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """-> need_more_info; appends a system message to the thread."""
        require_role(actor, ARBITER)
        version = _normalize_version(expected_version)
        dispute = self._require_dispute(dispute_id)
        if _is_frozen(dispute):
            return dispute
        self._check_arbiter(actor, dispute)
        _check_version(dispute, version)

        moment = now if now is not None else utc_now()
        timestamp = to_iso(moment)
        updated = self._write(
            dispute,
            {
                "status": DISPUTE_NEED_MORE_INFO,
                "assigned_arbiter_id": dispute["assigned_arbiter_id"] or actor.account_id,
                "updated_at": timestamp,
            },
        )
        try:
            self._store.insert_dispute_message(
                {
                    "message_id": f"msg-{uuid.uuid4()}",
                    "dispute_id": dispute_id,
                    "author_user_id": actor.account_id,
                    "kind": MESSAGE_KIND_SYSTEM,
                    "text": MORE_INFO_TEXT,
                    "created_at": timestamp,
                }
            )
        except Exception:
            get_logger(__name__).warning(
                "Dispute system message could not be stored",
                extra={"dispute_id": dispute_id},
                exc_info=True,
            )
        self._notify_parties(
            updated, events.DISPUTE_MORE_INFO_REQUESTED, "The arbiter requested more information."
        )
        return updated

    async def decide(
        self,
        actor: Actor,
        dispute_id: str,
        decision: object,
        expected_version: object = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        in_review -> decided; locks the decision and settles the escrow.

        A failed money movement leaves the decision locked and is logged for
        reconciliation.

        Raises:
            ServiceError: INVALID_DECISION, DISPUTE_NOT_FOUND, ASSIGNED_TO_ANOTHER,
                VERSION_MISMATCH, INVALID_STATUS, AMOUNT_MISMATCH
        """
        require_role(actor, ARBITER)
        normalized = _normalize_decision(decision)
        version = _normalize_version(expected_version)
        dispute = self._require_dispute(dispute_id)
        if _is_frozen(dispute):
            return dispute
        self._check_arbiter(actor, dispute)
        _check_version(dispute, version)
        if dispute["status"] != DISPUTE_IN_REVIEW:
            raise ServiceError(
                "INVALID_STATUS",
                f"Dispute cannot be decided from status {dispute['status']}",
                409,
                {"status": dispute["status"]},
            )

        contract = self._store.get_contract(dispute["contract_id"])
        if contract is not None and normalized["payout"] in (PAYOUT_SPLIT, PAYOUT_PARTIAL):
            escrow = self._escrow.get(contract["task_id"], contract["executor_id"])
            shares = normalized["executor_amount"] + normalized["customer_amount"]
            frozen = escrow is not None and escrow["status"] == ESCROW_FROZEN
            if frozen and shares != escrow["amount"]:
                raise ServiceError(
                    "AMOUNT_MISMATCH",
                    "Split amounts must add up to the escrowed amount",
                    409,
                    {"amount": escrow["amount"], **normalized},
                )

        moment = now if now is not None else utc_now()
        timestamp = to_iso(moment)
        locked = self._write(
            dispute,
            {
                "status": DISPUTE_DECIDED,
                "decision": normalized,
                "locked_decision_at": timestamp,
                "updated_at": timestamp,
            },
        )
        get_logger(__name__).info(
            "Dispute decided",
            extra={
                "dispute_id": dispute_id,
                "contract_id": dispute["contract_id"],
                "payout": normalized["payout"],
                "arbiter_id": actor.account_id,
            },
        )

        if contract is not None:
            self._execute_decision(locked, contract, normalized, moment)
        self._notify_parties(locked, events.DISPUTE_DECIDED, "The arbiter decided the dispute.")
        return locked

    async def close(
        self,
        actor: Actor,
        dispute_id: str,
        expected_version: object = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """* -> closed, by the assigned arbiter or either party."""
        version = _normalize_version(expected_version)
        dispute = self._require_dispute(dispute_id)
        is_arbiter = actor.role == ARBITER and dispute["assigned_arbiter_id"] == actor.account_id
        is_customer = actor.role == CUSTOMER and dispute["customer_id"] == actor.account_id
        is_executor = actor.role == EXECUTOR and dispute["executor_id"] == actor.account_id
        if not (is_arbiter or is_customer or is_executor):
            raise ServiceError(
                "FORBIDDEN", "Only a party or the assigned arbiter may close", 403, {}
            )
        if dispute["status"] == DISPUTE_CLOSED:
            return dispute
        _check_version(dispute, version)

        timestamp = to_iso(now if now is not None else utc_now())
        closed = self._write(dispute, {"status": DISPUTE_CLOSED, "updated_at": timestamp})
        self._notify_parties(
            closed, events.DISPUTE_CLOSED, "The dispute was closed.", exclude=actor.account_id
        )
        return closed

    async def post_message(
        self,
        actor: Actor,
        dispute_id: str,
        text: object,
        kind: object = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Append a message to the dispute thread.

        Parties post ``user`` messages; only arbiters may post ``system`` ones.
        """
        dispute = self.get_dispute(actor, dispute_id)
        if not isinstance(text, str) or not text.strip():
            raise ServiceError("INVALID_PAYLOAD", "text must be a non-empty string", 400, {})
        if len(text) > self._max_detail_length:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"text must be at most {self._max_detail_length} characters",
                400,
                {},
            )
        message_kind = MESSAGE_KIND_USER if kind is None else kind
        if message_kind not in (MESSAGE_KIND_USER, MESSAGE_KIND_SYSTEM):
            raise ServiceError("INVALID_PAYLOAD", "kind must be 'user' or 'system'", 400, {})
        if message_kind == MESSAGE_KIND_SYSTEM and actor.role != ARBITER:
            raise ServiceError("FORBIDDEN", "Only arbiters may post system messages", 403, {})

        message = {
            "message_id": f"msg-{uuid.uuid4()}",
            "dispute_id": dispute["dispute_id"],
            "author_user_id": actor.account_id,
            "kind": message_kind,
            "text": text.strip(),
            "created_at": to_iso(now if now is not None else utc_now()),
        }
        self._store.insert_dispute_message(message)

        recipients = {dispute["customer_id"], dispute["executor_id"]}
        if dispute["assigned_arbiter_id"]:
            recipients.add(dispute["assigned_arbiter_id"])
        recipients.discard(actor.account_id)
        self._dispatcher.emit_many(
            [
                OutboundEvent(
                    events.DISPUTE_MESSAGE_POSTED,
                    recipient,
                    "New message in the dispute.",
                    {
                        "dispute_id": dispute["dispute_id"],
                        "task_id": dispute["task_id"],
                        "message_id": message["message_id"],
                        "actor_id": actor.account_id,
                    },
                )
                for recipient in sorted(recipients)
            ]
        )
        return message

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _execute_decision(
        self,
        dispute: dict[str, Any],
        contract: dict[str, Any],
        decision: dict[str, Any],
        moment: datetime,
    ) -> None:
        logger = get_logger(__name__)
        task_id = contract["task_id"]
        executor_id = contract["executor_id"]
        timestamp = to_iso(moment)

        try:
            self._move_money(task_id, executor_id, decision, moment)
        except Exception:
            logger.exception(
                "Dispute settlement failed, decision stays locked",
                extra={
                    "dispute_id": dispute["dispute_id"],
                    "contract_id": contract["contract_id"],
                    "payout": decision["payout"],
                },
            )
            return

        self._store.compare_and_transition(
            "contracts",
            contract["contract_id"],
            CONTRACT_OPEN_STATUSES,
            {"status": CONTRACT_RESOLVED, "updated_at": timestamp},
        )
        assignment = self._store.get_assignment_by_pair(task_id, executor_id)
        if assignment is not None:
            self._store.compare_and_transition(
                "assignments",
                assignment["assignment_id"],
                ASSIGNMENT_ACTIVE_STATUSES,
                {"status": ACCEPTED, "accepted_at": timestamp, "updated_at": timestamp},
            )
        self._aggregator.recompute_quietly(task_id, moment)

    def _move_money(
        self,
        task_id: str,
        executor_id: str,
        decision: dict[str, Any],
        moment: datetime,
    ) -> None:
        if self._escrow.get(task_id, executor_id) is None:
            return
        payout = decision["payout"]
        if payout == PAYOUT_EXECUTOR:
            self._escrow.release(task_id, executor_id, moment)
        elif payout == PAYOUT_CUSTOMER:
            self._escrow.refund(task_id, executor_id, moment)
        else:
            self._escrow.split(
                task_id,
                executor_id,
                decision["executor_amount"],
                decision["customer_amount"],
                moment,
            )

    def _write(self, dispute: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
        won = self._store.compare_and_transition(
            "disputes",
            dispute["dispute_id"],
            dispute["status"],
            updates,
            expected_version=dispute["version"],
        )
        if not won:
            current = self._require_dispute(dispute["dispute_id"])
            raise ServiceError(
                "VERSION_MISMATCH",
                "Dispute was modified concurrently",
                409,
                {"expected_version": dispute["version"], "current_version": current["version"]},
            )
        return self._require_dispute(dispute["dispute_id"])

    def _require_dispute(self, dispute_id: str) -> dict[str, Any]:
        dispute = self._store.get_dispute(dispute_id)
        if dispute is None:
            raise ServiceError(
                "DISPUTE_NOT_FOUND", "Dispute not found", 404, {"dispute_id": dispute_id}
            )
        return dispute

    @staticmethod
    def _check_arbiter(actor: Actor, dispute: dict[str, Any]) -> None:
        holder = dispute["assigned_arbiter_id"]
        if holder and holder != actor.account_id:
            raise ServiceError(
                "ASSIGNED_TO_ANOTHER",
                "Dispute is assigned to another arbiter",
                409,
                {"assigned_arbiter_id": holder},
            )

    def _normalize_reason(self, value: object) -> dict[str, Any]:
        if not isinstance(value, dict):
            return {"category_id": DEFAULT_CATEGORY_ID, "reason_id": DEFAULT_REASON_ID}
        category_id = value.get("category_id")
        reason_id = value.get("reason_id")
        detail = value.get("detail")
        reason: dict[str, Any] = {
            "category_id": (
                category_id.strip()
                if isinstance(category_id, str) and category_id.strip()
                else DEFAULT_CATEGORY_ID
            ),
            "reason_id": (
                reason_id.strip()
                if isinstance(reason_id, str) and reason_id.strip()
                else DEFAULT_REASON_ID
            ),
        }
        if isinstance(detail, str) and detail.strip():
            if len(detail.strip()) > self._max_detail_length:
                raise ServiceError(
                    "INVALID_PAYLOAD",
                    f"reason.detail must be at most {self._max_detail_length} characters",
                    400,
                    {},
                )
            reason["detail"] = detail.strip()
        return reason

    def _notify_parties(
        self,
        dispute: dict[str, Any],
        kind: str,
        text: str,
        exclude: str | None = None,
    ) -> None:
        meta = {
            "dispute_id": dispute["dispute_id"],
            "task_id": dispute["task_id"],
            "contract_id": dispute["contract_id"],
            "status": dispute["status"],
        }
        self._dispatcher.emit_many(
            [
                OutboundEvent(kind, recipient, text, meta)
                for recipient in (dispute["customer_id"], dispute["executor_id"])
                if recipient != exclude
            ]
        )


def _can_view(actor: Actor, dispute: dict[str, Any]) -> bool:
    if actor.role == ARBITER:
        return True
    if actor.role == CUSTOMER:
        return bool(dispute["customer_id"] == actor.account_id)
    if actor.role == EXECUTOR:
        return bool(dispute["executor_id"] == actor.account_id)
    return False


def _is_frozen(dispute: dict[str, Any]) -> bool:
    return bool(dispute["locked_decision_at"]) or dispute["status"] == DISPUTE_CLOSED


def _check_version(dispute: dict[str, Any], expected_version: int | None) -> None:
    if expected_version is not None and expected_version != dispute["version"]:
        raise ServiceError(
            "VERSION_MISMATCH",
            "Dispute version does not match",
            409,
            {"expected_version": expected_version, "current_version": dispute["version"]},
        )


def _normalize_version(value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ServiceError("INVALID_PAYLOAD", "expected_version must be an integer", 400, {})
    return value


def _normalize_amount(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ServiceError(
            "INVALID_DECISION",
            "Decision amounts must be non-negative integers in minor units",
            400,
            {},
        )
    return value


def _normalize_decision(value: object) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ServiceError("INVALID_DECISION", "decision must be an object", 400, {})
    payout = value.get("payout")
    if payout in (PAYOUT_EXECUTOR, PAYOUT_CUSTOMER):
        return {"payout": payout}
    if payout in (PAYOUT_SPLIT, PAYOUT_PARTIAL):
        decision: dict[str, Any] = {
            "payout": payout,
            "executor_amount": _normalize_amount(value.get("executor_amount")),
            "customer_amount": _normalize_amount(value.get("customer_amount")),
        }
        note = value.get("note")
        if payout == PAYOUT_PARTIAL and isinstance(note, str) and note.strip():
            decision["note"] = note.strip()
        return decision
    raise ServiceError(
        "INVALID_DECISION",
        "decision.payout must be one of: customer, executor, partial, split",
        400,
        {},
    )
