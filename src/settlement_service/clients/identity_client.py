"""Async HTTP client for the Identity service."""

from __future__ import annotations

from typing import Any

import httpx

from settlement_service.core.exceptions import ServiceError
from settlement_service.logging import get_logger

VALID_ROLES = frozenset({"customer", "executor", "arbiter", "pending"})
_REJECTED_STATUSES = frozenset({401, 403, 404})


class IdentityClient:
    """
    Client for Identity service session resolution.

    Delegates bearer session tokens to the Identity service, which answers
    with the account id and role behind the session. The settlement service
    never stores credentials.
    """

    def __init__(
        self,
        base_url: str,
        session_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._session_path = session_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def resolve_session(self, token: str) -> dict[str, Any]:
        """
        Resolve a session token via the Identity service.

        Args:
            token: Opaque bearer session token

        Returns:
            dict with keys: account_id (str), role (str)

        Raises:
            ServiceError: UNAUTHORIZED (401) if the session is unknown or expired
            ServiceError: IDENTITY_SERVICE_UNAVAILABLE (503) on connection/timeout/unexpected errors
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.post(
                self._session_path,
                json={"token": token},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Identity service connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Cannot connect to Identity service",
                status_code=503,
                details={},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Identity service HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity service request failed",
                status_code=503,
                details={},
            ) from exc

        if response.status_code in _REJECTED_STATUSES:
            raise ServiceError(
                error="UNAUTHORIZED",
                message="Session is not valid",
                status_code=401,
                details={},
            )

        if response.status_code != 200:
            logger.warning(
                "Identity service unexpected status",
                extra={
                    "status_code": response.status_code,
                    "base_url": self._base_url,
                },
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity service returned unexpected status",
                status_code=503,
                details={},
            )

        try:
            result: dict[str, Any] = response.json()
        except ValueError as exc:
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity service returned invalid JSON",
                status_code=503,
                details={},
            ) from exc

        account_id = result.get("account_id")
        role = result.get("role")
        if not isinstance(account_id, str) or not account_id or role not in VALID_ROLES:
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity service returned an unexpected session shape",
                status_code=503,
                details={},
            )

        return {"account_id": account_id, "role": role}

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
