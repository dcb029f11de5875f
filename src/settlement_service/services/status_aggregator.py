"""Derives a task's coarse status from its assignments."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from settlement_service.logging import get_logger
from settlement_service.services.statuses import (
    ASSIGNMENT_ACTIVE_STATUSES,
    ASSIGNMENT_TERMINAL_STATUSES,
    DISPUTE_OPENED,
    SUBMITTED,
    TASK_CLOSED,
    TASK_DISPUTE,
    TASK_IN_PROGRESS,
    TASK_OPEN,
    TASK_REVIEW,
)
from settlement_service.services.timestamps import now_iso

if TYPE_CHECKING:
    from settlement_service.services.store import SettlementStore


def derive_task_status(
    assignments: list[dict[str, Any]],
    assigned_executor_count: int,
    max_executors: int,
) -> str:
    """
    Pick the task status implied by its assignments.

    Precedence: dispute, review, closed, in_progress, open. A task is closed
    only when every assignment is terminal and its executor slots are full.
    """
    statuses = [assignment["status"] for assignment in assignments]

    if DISPUTE_OPENED in statuses:
        return TASK_DISPUTE
    if SUBMITTED in statuses:
        return TASK_REVIEW
    if (
        statuses
        and all(status in ASSIGNMENT_TERMINAL_STATUSES for status in statuses)
        and assigned_executor_count >= max_executors
    ):
        return TASK_CLOSED
    if assigned_executor_count > 0 or any(
        status in ASSIGNMENT_ACTIVE_STATUSES for status in statuses
    ):
        return TASK_IN_PROGRESS
    return TASK_OPEN


class StatusAggregator:
    """Recomputes and persists task statuses."""

    def __init__(self, store: SettlementStore) -> None:
        self._store = store

    def recompute(self, task_id: str, now: datetime | None = None) -> str | None:
        """
        Recompute the task status and persist it if it changed.

        Returns:
            The task status after the call, or None if the task is unknown
        """
        task = self._store.get_task(task_id)
        if task is None:
            return None

        assignments = self._store.list_assignments(task_id=task_id)
        target = derive_task_status(
            assignments,
            len(task["assigned_executor_ids"]),
            int(task["max_executors"]),
        )
        if target == task["status"]:
            return target

        timestamp = now_iso(now)
        updates: dict[str, Any] = {"status": target, "updated_at": timestamp}
        if target == TASK_CLOSED:
            updates["completed_at"] = timestamp
        elif task["status"] == TASK_CLOSED:
            updates["completed_at"] = None

        changed = self._store.compare_and_transition("tasks", task_id, task["status"], updates)
        if not changed:
            # Lost to a concurrent recompute
            refreshed = self._store.get_task(task_id)
            return refreshed["status"] if refreshed is not None else None

        get_logger(__name__).info(
            "Task status recomputed",
            extra={"task_id": task_id, "from_status": task["status"], "to_status": target},
        )
        return target

    def recompute_quietly(self, task_id: str, now: datetime | None = None) -> str | None:
        """Recompute, logging instead of raising on failure."""
        try:
            return self.recompute(task_id, now)
        except Exception:
            get_logger(__name__).warning(
                "Task status recompute failed", extra={"task_id": task_id}, exc_info=True
            )
            return None
