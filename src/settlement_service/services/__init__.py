"""Service layer components."""

from settlement_service.services.assignment_lifecycle import AssignmentLifecycle
from settlement_service.services.dispute_service import DisputeService
from settlement_service.services.escrow_ledger import EscrowLedger
from settlement_service.services.sanctions import SanctionsEngine
from settlement_service.services.status_aggregator import StatusAggregator
from settlement_service.services.sweep_scheduler import SweepScheduler
from settlement_service.services.task_registry import TaskRegistry

__all__ = [
    "AssignmentLifecycle",
    "DisputeService",
    "EscrowLedger",
    "SanctionsEngine",
    "StatusAggregator",
    "SweepScheduler",
    "TaskRegistry",
]
