"""Escrow ledger: freeze a customer's budget per executor and settle it exactly once."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import ServiceError
from settlement_service.logging import get_logger
from settlement_service.services.statuses import (
    ESCROW_FROZEN,
    ESCROW_REFUNDED,
    ESCROW_RELEASED,
    ESCROW_SPLIT,
)
from settlement_service.services.store import DuplicateEscrowError
from settlement_service.services.timestamps import now_iso

if TYPE_CHECKING:
    from settlement_service.services.balance_ledger import BalanceLedger
    from settlement_service.services.store import SettlementStore


@dataclass(frozen=True)
class EscrowResult:
    """Outcome of an escrow operation.

    ``already`` means the escrow was settled or created by an earlier call and
    nothing moved now; ``skipped`` means there was nothing to freeze.
    """

    escrow: dict[str, Any] | None
    already: bool = False
    skipped: bool = False


def _is_amount(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class EscrowLedger:
    """
    Holds funds between selection and settlement.

    Settlement (release, refund, split) flips the escrow out of ``frozen``
    with a compare-and-transition first; only the caller that wins the flip
    decides the payouts. The flip is never undone. When crediting fails the
    escrow stays resolved with ``settled_at`` unset, and any later settlement
    call or the sweep posts the missing credits of that same resolution.
    """

    def __init__(self, store: SettlementStore, balances: BalanceLedger) -> None:
        self._store = store
        self._balances = balances

    # ------------------------------------------------------------------
    # Freeze
    # ------------------------------------------------------------------

    def freeze(
        self,
        task_id: str,
        executor_id: str,
        customer_id: str,
        amount: int,
        contract_id: str | None = None,
        now: datetime | None = None,
    ) -> EscrowResult:
        """
        Debit the customer and hold ``amount`` for the task/executor pair.

        Idempotent per pair: an existing escrow is returned unchanged apart
        from gaining a missing contract id. A zero amount freezes nothing.

        Raises:
            ServiceError: INVALID_AMOUNT, INSUFFICIENT_BALANCE
        """
        logger = get_logger(__name__)
        timestamp = now_iso(now)

        if not _is_amount(amount):
            raise ServiceError(
                "INVALID_AMOUNT",
                "Escrow amount must be an integer number of minor units",
                400,
                {},
            )

        existing = self._store.get_escrow(task_id, executor_id)
        if existing is not None:
            if contract_id is not None and existing["contract_id"] is None:
                self._store.attach_escrow_contract(existing["escrow_id"], contract_id, timestamp)
                existing = self._store.get_escrow_by_id(existing["escrow_id"])
            return EscrowResult(escrow=existing, already=True)

        if amount <= 0:
            return EscrowResult(escrow=None, skipped=True)

        balance = self._balances.get_balance(customer_id)
        if balance < amount:
            raise ServiceError(
                "INSUFFICIENT_BALANCE",
                "Customer balance does not cover the escrow amount",
                402,
                {"required": amount, "balance": balance},
            )

        debit = self._balances.debit(
            customer_id, amount, reference=f"escrow_freeze:{task_id}:{executor_id}"
        )

        escrow_id = f"esc-{uuid.uuid4()}"
        try:
            self._store.insert_escrow(
                {
                    "escrow_id": escrow_id,
                    "task_id": task_id,
                    "executor_id": executor_id,
                    "contract_id": contract_id,
                    "customer_id": customer_id,
                    "amount": amount,
                    "status": ESCROW_FROZEN,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
            )
        except DuplicateEscrowError:
            self._balances.credit(
                customer_id,
                amount,
                reference=f"escrow_freeze_rollback:{debit['tx_id']}",
            )
            logger.info(
                "Concurrent escrow freeze detected, debit returned",
                extra={"task_id": task_id, "executor_id": executor_id},
            )
            return EscrowResult(escrow=self._store.get_escrow(task_id, executor_id), already=True)

        logger.info(
            "Escrow frozen",
            extra={
                "escrow_id": escrow_id,
                "task_id": task_id,
                "executor_id": executor_id,
                "amount": amount,
            },
        )
        return EscrowResult(escrow=self._store.get_escrow_by_id(escrow_id))

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def release(self, task_id: str, executor_id: str, now: datetime | None = None) -> EscrowResult:
        """Pay the full amount to the executor."""
        escrow = self._require_escrow(task_id, executor_id)
        if escrow["status"] != ESCROW_FROZEN:
            return self._resume(escrow, now)
        return self._settle(escrow, ESCROW_RELEASED, escrow["amount"], 0, now)

    def refund(self, task_id: str, executor_id: str, now: datetime | None = None) -> EscrowResult:
        """Return the full amount to the customer."""
        escrow = self._require_escrow(task_id, executor_id)
        if escrow["status"] != ESCROW_FROZEN:
            return self._resume(escrow, now)
        return self._settle(escrow, ESCROW_REFUNDED, 0, escrow["amount"], now)

    def split(
        self,
        task_id: str,
        executor_id: str,
        executor_amount: int,
        customer_amount: int,
        now: datetime | None = None,
    ) -> EscrowResult:
        """
        Divide the amount between executor and customer.

        Raises:
            ServiceError: INVALID_AMOUNT for negative or non-integer shares,
                AMOUNT_MISMATCH when the shares do not add up to the escrow amount
        """
        escrow = self._require_escrow(task_id, executor_id)
        if escrow["status"] != ESCROW_FROZEN:
            return self._resume(escrow, now)

        if not _is_amount(executor_amount) or not _is_amount(customer_amount):
            raise ServiceError(
                "INVALID_AMOUNT",
                "Split amounts must be integers",
                400,
                {},
            )
        if executor_amount < 0 or customer_amount < 0:
            raise ServiceError(
                "INVALID_AMOUNT",
                "Split amounts must not be negative",
                400,
                {},
            )
        if executor_amount + customer_amount != escrow["amount"]:
            raise ServiceError(
                "AMOUNT_MISMATCH",
                "Split amounts must add up to the escrowed amount",
                409,
                {
                    "amount": escrow["amount"],
                    "executor_amount": executor_amount,
                    "customer_amount": customer_amount,
                },
            )
        return self._settle(escrow, ESCROW_SPLIT, executor_amount, customer_amount, now)

    def retry_unsettled(self, limit: int, now: datetime | None = None) -> tuple[int, int]:
        """
        Post the missing credits of resolved escrows.

        Returns:
            (completed, failed) counts; failures are logged and stay pending
        """
        completed = 0
        failed = 0
        for escrow in self._store.list_unsettled_escrows(limit):
            try:
                self._resume(escrow, now)
            except Exception:
                failed += 1
            else:
                completed += 1
        return completed, failed

    def get(self, task_id: str, executor_id: str) -> dict[str, Any] | None:
        """Fetch the escrow of a task/executor pair."""
        return self._store.get_escrow(task_id, executor_id)

    def _require_escrow(self, task_id: str, executor_id: str) -> dict[str, Any]:
        escrow = self._store.get_escrow(task_id, executor_id)
        if escrow is None:
            raise ServiceError(
                "ESCROW_NOT_FOUND",
                "No escrow exists for this task and executor",
                404,
                {"task_id": task_id, "executor_id": executor_id},
            )
        return escrow

    def _settle(
        self,
        escrow: dict[str, Any],
        target_status: str,
        executor_amount: int,
        customer_amount: int,
        now: datetime | None,
    ) -> EscrowResult:
        escrow_id = escrow["escrow_id"]

        won = self._store.compare_and_transition(
            "escrows",
            escrow_id,
            ESCROW_FROZEN,
            {
                "status": target_status,
                "executor_payout": executor_amount,
                "customer_payout": customer_amount,
                "updated_at": now_iso(now),
            },
        )
        current = self._store.get_escrow_by_id(escrow_id)
        if not won or current is None:
            return self._resume(current, now)

        self._post_credits(current, now)
        get_logger(__name__).info(
            "Escrow settled",
            extra={
                "escrow_id": escrow_id,
                "status": target_status,
                "executor_amount": executor_amount,
                "customer_amount": customer_amount,
            },
        )
        return EscrowResult(escrow=self._store.get_escrow_by_id(escrow_id))

    def _resume(self, escrow: dict[str, Any] | None, now: datetime | None) -> EscrowResult:
        """Finish the credits of an escrow resolved by an earlier call."""
        if escrow is None or escrow["settled_at"] is not None:
            return EscrowResult(escrow=escrow, already=True)
        self._post_credits(escrow, now)
        get_logger(__name__).info(
            "Escrow settlement completed",
            extra={"escrow_id": escrow["escrow_id"], "status": escrow["status"]},
        )
        return EscrowResult(escrow=self._store.get_escrow_by_id(escrow["escrow_id"]), already=True)

    def _post_credits(self, escrow: dict[str, Any], now: datetime | None) -> None:
        """
        Credit the stored payouts of a resolved escrow.

        Credits are idempotent per reference, so calling this again after a
        partial failure only posts what is missing. The escrow keeps its
        resolved status on failure and ``settled_at`` stays empty.
        """
        escrow_id = escrow["escrow_id"]
        status = escrow["status"]
        payouts = escrow["payouts"] or {"executor_amount": 0, "customer_amount": 0}
        try:
            if payouts["executor_amount"] > 0:
                self._balances.credit(
                    escrow["executor_id"],
                    payouts["executor_amount"],
                    reference=f"escrow_{status}:{escrow_id}:executor",
                )
            if payouts["customer_amount"] > 0:
                self._balances.credit(
                    escrow["customer_id"],
                    payouts["customer_amount"],
                    reference=f"escrow_{status}:{escrow_id}:customer",
                )
        except Exception:
            get_logger(__name__).exception(
                "Escrow credit failed, settlement pending",
                extra={"escrow_id": escrow_id, "status": status},
            )
            raise
        self._store.mark_escrow_settled(escrow_id, now_iso(now))
