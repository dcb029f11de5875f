"""API routers."""

from settlement_service.routers import (
    assignments,
    contracts,
    disputes,
    escrows,
    executors,
    health,
    tasks,
)

__all__ = ["assignments", "contracts", "disputes", "escrows", "executors", "health", "tasks"]
