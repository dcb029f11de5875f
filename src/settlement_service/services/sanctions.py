"""Violation recording and escalating sanctions for executors."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import ServiceError
from settlement_service.logging import get_logger
from settlement_service.services.statuses import VIOLATION_TYPES
from settlement_service.services.store import DuplicateViolationError
from settlement_service.services.timestamps import now_iso, parse_iso, to_iso, utc_now

if TYPE_CHECKING:
    from settlement_service.services.store import SettlementStore

DECAY_PERIOD = timedelta(days=90)
RATING_PENALTY_PERCENT = -5
BLOCK_HOURS_BY_LEVEL: dict[int, int] = {3: 24, 4: 72}
BAN_LEVEL = 5

SANCTION_WARNING = "warning"
SANCTION_RATING_PENALTY = "rating_penalty"
SANCTION_RESPOND_BLOCK = "respond_block"
SANCTION_BAN = "ban"


@dataclass(frozen=True)
class Sanction:
    """The consequence applied for a violation at a given level."""

    kind: str
    level: int
    until: str | None = None
    delta_percent: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Render for API responses and event metadata."""
        result: dict[str, Any] = {"kind": self.kind, "level": self.level}
        if self.until is not None:
            result["until"] = self.until
        if self.delta_percent is not None:
            result["delta_percent"] = self.delta_percent
        return result


@dataclass(frozen=True)
class RespondGuard:
    """Whether an executor may respond to new tasks right now."""

    allowed: bool
    reason: str | None = None
    until: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Render for API responses."""
        return {"allowed": self.allowed, "reason": self.reason, "until": self.until}


def compute_level(created_at: list[datetime], now: datetime) -> int:
    """
    Walk violations oldest first and return the current escalation level.

    Before each violation the level decays by one per full decay period
    elapsed since the previous violation (never below zero); the violation
    then adds one. The same decay is applied from the last violation to
    ``now``. Violations after ``now`` are ignored.
    """
    level = 0
    previous: datetime | None = None
    for moment in sorted(created_at):
        if moment > now:
            break
        if previous is not None:
            level = max(0, level - (moment - previous) // DECAY_PERIOD)
        level += 1
        previous = moment
    if previous is not None:
        level = max(0, level - (now - previous) // DECAY_PERIOD)
    return level


class SanctionsEngine:
    """Records deadline violations and applies the sanction ladder."""

    def __init__(self, store: SettlementStore) -> None:
        self._store = store

    def record_violation(
        self,
        executor_id: str,
        violation_type: str,
        task_id: str,
        assignment_id: str,
        now: datetime | None = None,
    ) -> tuple[dict[str, Any], bool]:
        """
        Record a violation once per (assignment, type).

        Returns:
            (violation, already) where ``already`` is True if it existed before
        """
        if violation_type not in VIOLATION_TYPES:
            raise ServiceError(
                "INVALID_VIOLATION_TYPE",
                f"Unknown violation type: {violation_type}",
                400,
                {"allowed": sorted(VIOLATION_TYPES)},
            )

        existing = self._store.get_violation(assignment_id, violation_type)
        if existing is not None:
            return existing, True

        violation = {
            "violation_id": f"vio-{uuid.uuid4()}",
            "executor_id": executor_id,
            "type": violation_type,
            "task_id": task_id,
            "assignment_id": assignment_id,
            "created_at": now_iso(now),
        }
        try:
            self._store.insert_violation(violation)
        except DuplicateViolationError:
            concurrent = self._store.get_violation(assignment_id, violation_type)
            if concurrent is None:
                raise
            return concurrent, True
        return violation, False

    def violation_level(
        self,
        executor_id: str,
        violation_type: str,
        now: datetime | None = None,
    ) -> int:
        """Current escalation level of an executor for one violation type."""
        moment = now if now is not None else utc_now()
        violations = self._store.list_violations(executor_id, violation_type)
        created = [parse_iso(row["created_at"]) for row in violations]
        return compute_level([value for value in created if value is not None], moment)

    def apply_sanctions(
        self,
        violation: dict[str, Any],
        now: datetime | None = None,
    ) -> Sanction:
        """Apply the sanction matching the executor's level after ``violation``."""
        logger = get_logger(__name__)
        moment = now if now is not None else utc_now()
        executor_id = violation["executor_id"]
        level = self.violation_level(executor_id, violation["type"], moment)

        if level <= 1:
            sanction = Sanction(kind=SANCTION_WARNING, level=level)
        elif level == 2:
            try:
                self._store.insert_rating_adjustment(
                    {
                        "adjustment_id": f"adj-{uuid.uuid4()}",
                        "violation_id": violation["violation_id"],
                        "executor_id": executor_id,
                        "reason": violation["type"],
                        "delta_percent": RATING_PENALTY_PERCENT,
                        "created_at": to_iso(moment),
                    }
                )
            except Exception:
                logger.warning(
                    "Rating adjustment could not be recorded",
                    extra={"violation_id": violation["violation_id"], "executor_id": executor_id},
                    exc_info=True,
                )
            sanction = Sanction(
                kind=SANCTION_RATING_PENALTY, level=level, delta_percent=RATING_PENALTY_PERCENT
            )
        elif level < BAN_LEVEL:
            until = self.set_respond_blocked_until(
                executor_id, moment + timedelta(hours=BLOCK_HOURS_BY_LEVEL[level]), moment
            )
            sanction = Sanction(kind=SANCTION_RESPOND_BLOCK, level=level, until=until)
        else:
            self.ban_executor(executor_id, moment)
            sanction = Sanction(kind=SANCTION_BAN, level=level)

        logger.info(
            "Sanction applied",
            extra={
                "executor_id": executor_id,
                "violation_id": violation["violation_id"],
                "violation_type": violation["type"],
                "sanction": sanction.kind,
                "level": level,
            },
        )
        return sanction

    def record_and_sanction(
        self,
        executor_id: str,
        violation_type: str,
        task_id: str,
        assignment_id: str,
        now: datetime | None = None,
    ) -> tuple[dict[str, Any], Sanction | None]:
        """
        Record a violation and sanction it, once.

        A violation that already existed is not sanctioned again.
        """
        violation, already = self.record_violation(
            executor_id, violation_type, task_id, assignment_id, now
        )
        if already:
            return violation, None
        return violation, self.apply_sanctions(violation, now)

    def set_respond_blocked_until(
        self,
        executor_id: str,
        until: datetime,
        now: datetime | None = None,
    ) -> str:
        """Block the executor from responding until ``until``; an existing later block wins."""
        return self._store.extend_respond_block(executor_id, to_iso(until), now_iso(now))

    def ban_executor(self, executor_id: str, now: datetime | None = None) -> None:
        """Ban an executor permanently."""
        self._store.mark_banned(executor_id, now_iso(now))
        get_logger(__name__).warning("Executor banned", extra={"executor_id": executor_id})

    def is_banned(self, executor_id: str) -> bool:
        """Return True if the executor's account is banned."""
        restriction = self._store.get_restriction(executor_id)
        return restriction is not None and restriction["account_status"] == "banned"

    def get_restriction(self, executor_id: str) -> dict[str, Any]:
        """Return the executor's restriction row, or the default for a clean record."""
        restriction = self._store.get_restriction(executor_id)
        if restriction is None:
            return {
                "executor_id": executor_id,
                "account_status": "active",
                "respond_blocked_until": None,
            }
        return {
            "executor_id": restriction["executor_id"],
            "account_status": restriction["account_status"],
            "respond_blocked_until": restriction["respond_blocked_until"],
        }

    def can_executor_respond(
        self,
        executor_id: str,
        now: datetime | None = None,
    ) -> RespondGuard:
        """Check whether the executor may respond to tasks at ``now``."""
        moment = now if now is not None else utc_now()
        restriction = self._store.get_restriction(executor_id)
        if restriction is None:
            return RespondGuard(allowed=True)
        if restriction["account_status"] == "banned":
            return RespondGuard(allowed=False, reason="banned")
        blocked_until = parse_iso(restriction["respond_blocked_until"])
        if blocked_until is not None and blocked_until > moment:
            return RespondGuard(
                allowed=False, reason="blocked", until=restriction["respond_blocked_until"]
            )
        return RespondGuard(allowed=True)
