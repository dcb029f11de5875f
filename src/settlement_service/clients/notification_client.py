"""Async HTTP client for the notification sink."""

from __future__ import annotations

from typing import Any

import httpx

from settlement_service.core.exceptions import ServiceError
from settlement_service.logging import get_logger


class NotificationClient:
    """
    Client for delivering user notifications.

    Delivery is fire-and-forget from the settlement point of view: the
    event dispatcher logs and drops anything this client fails to send.
    """

    def __init__(
        self,
        base_url: str,
        notify_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._notify_path = notify_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def notify(
        self,
        recipient_id: str,
        kind: str,
        text: str,
        meta: dict[str, Any],
    ) -> None:
        """
        Deliver one notification.

        Raises:
            ServiceError: NOTIFICATION_SERVICE_UNAVAILABLE (502) on connection,
                timeout or non-2xx responses
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.post(
                self._notify_path,
                json={"recipient_id": recipient_id, "kind": kind, "text": text, "meta": meta},
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification service request failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="NOTIFICATION_SERVICE_UNAVAILABLE",
                message="Cannot reach notification service",
                status_code=502,
                details={},
            ) from exc

        if response.status_code >= 300:
            logger.warning(
                "Notification service unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise ServiceError(
                error="NOTIFICATION_SERVICE_UNAVAILABLE",
                message="Notification service returned unexpected status",
                status_code=502,
                details={},
            )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
