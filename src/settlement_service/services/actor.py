"""The authenticated caller of a command."""

from __future__ import annotations

from dataclasses import dataclass

from settlement_service.core.exceptions import ServiceError

CUSTOMER = "customer"
EXECUTOR = "executor"
ARBITER = "arbiter"


@dataclass(frozen=True)
class Actor:
    """Account id and role resolved from the caller's session."""

    account_id: str
    role: str


def require_role(actor: Actor, *roles: str) -> None:
    """Raise FORBIDDEN unless the actor holds one of ``roles``."""
    if actor.role not in roles:
        raise ServiceError(
            "FORBIDDEN",
            f"This action requires role: {' or '.join(roles)}",
            403,
            {"role": actor.role},
        )
