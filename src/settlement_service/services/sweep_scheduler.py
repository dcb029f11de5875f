"""Periodic sweep that applies deadline-driven assignment transitions."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from settlement_service.logging import get_logger
from settlement_service.services.statuses import IN_PROGRESS, PAUSE_REQUESTED, PAUSED, PENDING_START
from settlement_service.services.timestamps import to_iso, utc_now

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from settlement_service.services.assignment_lifecycle import AssignmentLifecycle
    from settlement_service.services.store import SettlementStore


@dataclass
class SweepResult:
    """Counts from one sweep tick."""

    ran: bool = True
    expired: int = 0
    overdue: int = 0
    pauses_auto_accepted: int = 0
    pauses_ended: int = 0
    settlements_completed: int = 0
    failures: int = 0
    scanned: int = 0
    started_at: str | None = None
    skipped_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging and the health endpoint."""
        return {
            "ran": self.ran,
            "expired": self.expired,
            "overdue": self.overdue,
            "pauses_auto_accepted": self.pauses_auto_accepted,
            "pauses_ended": self.pauses_ended,
            "settlements_completed": self.settlements_completed,
            "failures": self.failures,
            "scanned": self.scanned,
            "started_at": self.started_at,
            "skipped_reason": self.skipped_reason,
        }


class SweepScheduler:
    """
    Single-flight background sweep over due assignments.

    After ``initial_delay`` seconds the loop ticks every ``interval`` seconds.
    A tick that is still running when the next one is due makes the next one
    a skip instead of queueing it. Each tick walks four due-lists in order:
    missed starts, missed execution deadlines, unanswered pause requests and
    finished pauses. It then retries escrow settlements whose credits did
    not all post.
    """

    def __init__(
        self,
        store: SettlementStore,
        lifecycle: AssignmentLifecycle,
        initial_delay: float,
        interval: float,
        batch_size: int,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._initial_delay = initial_delay
        self._interval = interval
        self._batch_size = batch_size
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self.last_result: SweepResult | None = None
        self.last_tick_at: str | None = None

    @property
    def started(self) -> bool:
        """True while the background loop is alive."""
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> SweepResult:
        """Run one sweep unless another is still in flight."""
        if self._running:
            get_logger(__name__).info("Sweep tick skipped, previous tick still running")
            return SweepResult(ran=False, skipped_reason="busy")
        self._running = True
        try:
            return await self.run_once(now)
        finally:
            self._running = False

    async def run_once(self, now: datetime | None = None) -> SweepResult:
        """Apply every transition that is due at ``now``."""
        logger = get_logger(__name__)
        moment = now if now is not None else utc_now()
        result = SweepResult(started_at=to_iso(moment))

        if not self._store.is_ready():
            logger.warning("Sweep skipped, store not ready")
            result.ran = False
            result.skipped_reason = "store_not_ready"
            self._remember(result)
            return result

        result.expired = await self._sweep(
            result, PENDING_START, "start_deadline_at", self._lifecycle.expire_no_start, moment
        )
        result.overdue = await self._sweep(
            result, IN_PROGRESS, "execution_deadline_at", self._lifecycle.mark_overdue, moment
        )
        result.pauses_auto_accepted = await self._sweep(
            result,
            PAUSE_REQUESTED,
            "pause_auto_accept_at",
            self._lifecycle.auto_accept_pause,
            moment,
        )
        result.pauses_ended = await self._sweep(
            result, PAUSED, "paused_until", self._lifecycle.resume_paused, moment
        )
        result.settlements_completed = self._complete_settlements(result, moment)

        self._remember(result)
        if (
            result.expired
            or result.overdue
            or result.pauses_auto_accepted
            or result.pauses_ended
            or result.settlements_completed
        ):
            logger.info("Sweep completed", extra=result.to_dict())
        return result

    async def _sweep(
        self,
        result: SweepResult,
        status: str,
        deadline_column: str,
        transition: Callable[[dict[str, Any], datetime], Awaitable[bool]],
        moment: datetime,
    ) -> int:
        logger = get_logger(__name__)
        try:
            due = self._store.list_due_assignments(
                status, deadline_column, to_iso(moment), self._batch_size
            )
        except Exception:
            logger.exception("Sweep query failed", extra={"status": status})
            result.failures += 1
            return 0

        applied = 0
        for assignment in due:
            result.scanned += 1
            try:
                if await transition(assignment, moment):
                    applied += 1
            except Exception:
                result.failures += 1
                logger.exception(
                    "Sweep transition failed",
                    extra={"assignment_id": assignment["assignment_id"], "status": status},
                )
        return applied

    def _complete_settlements(self, result: SweepResult, moment: datetime) -> int:
        try:
            completed, failed = self._lifecycle.complete_pending_settlements(
                self._batch_size, moment
            )
        except Exception:
            get_logger(__name__).exception("Settlement retry failed")
            result.failures += 1
            return 0
        result.failures += failed
        return completed

    def _remember(self, result: SweepResult) -> None:
        self.last_result = result
        self.last_tick_at = result.started_at

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background loop on the running event loop."""
        if self.started:
            return
        self._task = asyncio.create_task(self._loop(), name="settlement-sweep")
        get_logger(__name__).info(
            "Sweep scheduler started",
            extra={"initial_delay": self._initial_delay, "interval": self._interval},
        )

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        get_logger(__name__).info("Sweep scheduler stopped")

    async def _loop(self) -> None:
        await asyncio.sleep(self._initial_delay)
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                get_logger(__name__).exception("Unhandled error in sweep tick")
            await asyncio.sleep(self._interval)
