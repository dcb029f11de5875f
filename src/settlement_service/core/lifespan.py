"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from settlement_service.clients.identity_client import IdentityClient
from settlement_service.clients.notification_client import NotificationClient
from settlement_service.config import get_settings
from settlement_service.core.state import init_app_state
from settlement_service.logging import get_logger, setup_logging
from settlement_service.services.assignment_lifecycle import AssignmentLifecycle, LifecycleWindows
from settlement_service.services.balance_ledger import BalanceLedger
from settlement_service.services.dispute_service import DisputeService
from settlement_service.services.escrow_ledger import EscrowLedger
from settlement_service.services.events import EventDispatcher
from settlement_service.services.sanctions import SanctionsEngine
from settlement_service.services.status_aggregator import StatusAggregator
from settlement_service.services.store import SettlementStore
from settlement_service.services.sweep_scheduler import SweepScheduler
from settlement_service.services.task_registry import TaskRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(
        settings.logging.level,
        settings.service.name,
        settings.logging.directory,
        settings.logging.retention_days,
    )
    logger = get_logger(__name__)

    state = init_app_state()

    db_path = settings.database.path
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    # Store first: schema and unique indexes exist before anything serves
    store = SettlementStore(db_path=db_path)
    state.store = store
    balances = BalanceLedger(db_path=db_path)
    state.balances = balances

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        session_path=settings.identity.session_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client

    notification_client = NotificationClient(
        base_url=settings.notifications.base_url,
        notify_path=settings.notifications.notify_path,
        timeout_seconds=settings.notifications.timeout_seconds,
    )
    state.notification_client = notification_client

    dispatcher = EventDispatcher(
        notification_client=notification_client,
        queue_size=settings.notifications.queue_size,
    )
    state.dispatcher = dispatcher

    escrow = EscrowLedger(store=store, balances=balances)
    sanctions = SanctionsEngine(store=store)
    aggregator = StatusAggregator(store=store)
    windows = LifecycleWindows.from_config(settings.lifecycle)
    state.escrow = escrow
    state.sanctions = sanctions
    state.aggregator = aggregator

    state.lifecycle = AssignmentLifecycle(
        store=store,
        escrow=escrow,
        sanctions=sanctions,
        aggregator=aggregator,
        dispatcher=dispatcher,
        windows=windows,
    )
    state.registry = TaskRegistry(
        store=store,
        escrow=escrow,
        sanctions=sanctions,
        aggregator=aggregator,
        dispatcher=dispatcher,
        windows=windows,
    )
    state.disputes = DisputeService(
        store=store,
        escrow=escrow,
        aggregator=aggregator,
        dispatcher=dispatcher,
        sla_seconds=settings.disputes.sla_seconds,
        max_detail_length=settings.disputes.max_detail_length,
    )
    state.scheduler = SweepScheduler(
        store=store,
        lifecycle=state.lifecycle,
        initial_delay=settings.scheduler.initial_delay_seconds,
        interval=settings.scheduler.interval_seconds,
        batch_size=settings.scheduler.batch_size,
    )

    dispatcher.start()
    if settings.scheduler.enabled:
        state.scheduler.start()

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": db_path,
            "identity_base_url": settings.identity.base_url,
            "notifications_base_url": settings.notifications.base_url,
            "scheduler_enabled": settings.scheduler.enabled,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    await state.scheduler.stop()
    await dispatcher.stop()

    # Close HTTP clients (closes httpx async clients)
    await identity_client.close()
    await notification_client.close()

    balances.close()
    store.close()
