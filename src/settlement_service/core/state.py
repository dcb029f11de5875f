"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from settlement_service.clients.identity_client import IdentityClient
    from settlement_service.clients.notification_client import NotificationClient
    from settlement_service.services.assignment_lifecycle import AssignmentLifecycle
    from settlement_service.services.balance_ledger import BalanceLedger
    from settlement_service.services.dispute_service import DisputeService
    from settlement_service.services.escrow_ledger import EscrowLedger
    from settlement_service.services.events import EventDispatcher
    from settlement_service.services.sanctions import SanctionsEngine
    from settlement_service.services.status_aggregator import StatusAggregator
    from settlement_service.services.store import SettlementStore
    from settlement_service.services.sweep_scheduler import SweepScheduler
    from settlement_service.services.task_registry import TaskRegistry


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: SettlementStore | None = None
    balances: BalanceLedger | None = None
    escrow: EscrowLedger | None = None
    sanctions: SanctionsEngine | None = None
    aggregator: StatusAggregator | None = None
    dispatcher: EventDispatcher | None = None
    lifecycle: AssignmentLifecycle | None = None
    registry: TaskRegistry | None = None
    disputes: DisputeService | None = None
    scheduler: SweepScheduler | None = None
    identity_client: IdentityClient | None = None
    notification_client: NotificationClient | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep the dispatcher's delivery client in sync with AppState fields."""
        super().__setattr__(name, value)

        dispatcher = self.__dict__.get("dispatcher")
        if dispatcher is None:
            return
        if name == "notification_client":
            dispatcher.set_notification_client(value)
        elif name == "dispatcher" and value is not None:
            client = self.__dict__.get("notification_client")
            if client is not None:
                value.set_notification_client(client)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
