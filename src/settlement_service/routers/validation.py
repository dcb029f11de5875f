"""Shared request validation helpers for settlement routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from settlement_service.core.exceptions import ServiceError
from settlement_service.core.state import get_app_state
from settlement_service.services.actor import Actor

if TYPE_CHECKING:
    from fastapi import Request


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


async def read_optional_body(request: Request) -> dict[str, Any]:
    """Parse the request body, treating an empty body as ``{}``."""
    body = await request.body()
    return {} if body == b"" else parse_json_body(body)


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the session token from the Authorization header."""
    if authorization is None:
        raise ServiceError(
            "UNAUTHORIZED",
            "Missing Authorization header",
            401,
            {},
        )

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHORIZED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise ServiceError(
            "UNAUTHORIZED",
            "Bearer token must not be empty",
            401,
            {},
        )

    return token


async def authenticate(request: Request) -> Actor:
    """Resolve the caller's session through the Identity service."""
    token = extract_bearer_token(request.headers.get("authorization"))

    state = get_app_state()
    if state.identity_client is None:
        msg = "IdentityClient not initialized"
        raise RuntimeError(msg)

    session = await state.identity_client.resolve_session(token)
    require_store_ready()
    return Actor(account_id=session["account_id"], role=session["role"])


def require_store_ready() -> None:
    """Raise STORE_UNAVAILABLE when the settlement database does not answer."""
    store = get_app_state().store
    if store is None or not store.is_ready():
        raise ServiceError(
            "STORE_UNAVAILABLE",
            "Settlement store is not ready",
            503,
            {},
        )
