"""Outbound events emitted after settlement transitions commit."""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from settlement_service.clients.notification_client import NotificationClient

ASSIGNMENT_SELECTED = "assignment_selected"
ASSIGNMENT_STARTED = "assignment_started"
PAUSE_REQUESTED = "pause_requested"
PAUSE_ACCEPTED = "pause_accepted"
PAUSE_REJECTED = "pause_rejected"
PAUSE_AUTO_ACCEPTED = "pause_auto_accepted"
PAUSE_ENDED = "pause_ended"
ASSIGNMENT_SUBMITTED = "assignment_submitted"
ASSIGNMENT_ACCEPTED = "assignment_accepted"
ASSIGNMENT_REMOVED = "assignment_removed"
SELECTION_REJECTED = "selection_rejected"
ASSIGNMENT_OVERDUE = "assignment_overdue"
CONTRACT_CANCELLED = "contract_cancelled"
REVISION_REQUESTED = "task_revision_requested"
DISPUTE_OPENED = "dispute_opened"
DISPUTE_MORE_INFO_REQUESTED = "dispute_more_info_requested"
DISPUTE_DECIDED = "dispute_decided"
DISPUTE_CLOSED = "dispute_closed"
DISPUTE_MESSAGE_POSTED = "dispute_message"


@dataclass(frozen=True)
class OutboundEvent:
    """A notification for one recipient."""

    kind: str
    recipient_id: str
    text: str
    meta: dict[str, Any] = field(default_factory=dict)


class EventDispatcher:
    """
    Hands outbound events to the notification sink without blocking callers.

    While running, events go through an asyncio queue to a single consumer
    that delivers them with the NotificationClient; delivery failures are
    logged and dropped. Every emitted event is also kept in a bounded
    ``recent`` buffer, which is all that happens while the dispatcher is
    stopped.
    """

    def __init__(
        self,
        notification_client: NotificationClient | None,
        queue_size: int,
        history_size: int = 1000,
    ) -> None:
        self._client = notification_client
        self._queue_size = queue_size
        self._queue: asyncio.Queue[OutboundEvent] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self.recent: deque[OutboundEvent] = deque(maxlen=history_size)

    @property
    def running(self) -> bool:
        """True while the consumer task is alive."""
        return self._consumer is not None and not self._consumer.done()

    def set_notification_client(self, client: NotificationClient | None) -> None:
        """Replace the delivery client (used when tests swap in a mock)."""
        self._client = client

    def emit(self, event: OutboundEvent) -> None:
        """Record an event and queue it for delivery if the dispatcher runs."""
        logger = get_logger(__name__)
        self.recent.append(event)

        if self._queue is None or not self.running:
            logger.debug(
                "Event recorded without delivery",
                extra={"kind": event.kind, "recipient_id": event.recipient_id},
            )
            return

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Event queue full, dropping event",
                extra={"kind": event.kind, "recipient_id": event.recipient_id},
            )

    def emit_many(self, events: list[OutboundEvent]) -> None:
        """Emit several events in order."""
        for event in events:
            self.emit(event)

    def start(self) -> None:
        """Start the background consumer. Must be called inside a running loop."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._consumer = asyncio.create_task(self._consume(), name="event-dispatcher")

    async def stop(self) -> None:
        """Stop the consumer; queued events that were not delivered are dropped."""
        consumer = self._consumer
        self._consumer = None
        if consumer is None:
            return
        consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await consumer
        if self._queue is not None and not self._queue.empty():
            get_logger(__name__).info(
                "Event dispatcher stopped with undelivered events",
                extra={"pending": self._queue.qsize()},
            )
        self._queue = None

    async def _consume(self) -> None:
        logger = get_logger(__name__)
        queue = self._queue
        if queue is None:
            return
        while True:
            event = await queue.get()
            try:
                if self._client is not None:
                    await self._client.notify(
                        event.recipient_id, event.kind, event.text, event.meta
                    )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "Event delivery failed",
                    extra={"kind": event.kind, "recipient_id": event.recipient_id},
                    exc_info=True,
                )
            finally:
                queue.task_done()
