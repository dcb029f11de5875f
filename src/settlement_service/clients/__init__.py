"""HTTP clients for the identity service and the notification sink."""

from settlement_service.clients.identity_client import IdentityClient
from settlement_service.clients.notification_client import NotificationClient

__all__ = ["IdentityClient", "NotificationClient"]
