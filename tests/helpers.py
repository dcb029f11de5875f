"""Shared test helpers: configuration text, fixed accounts and time points."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from settlement_service.core.exceptions import ServiceError
from settlement_service.services.actor import Actor

# ---------------------------------------------------------------------------
# Fixed accounts and their session tokens
# ---------------------------------------------------------------------------
CUSTOMER_ID = "u-customer-alice"
OTHER_CUSTOMER_ID = "u-customer-dave"
EXECUTOR_ID = "u-executor-bob"
OTHER_EXECUTOR_ID = "u-executor-carol"
ARBITER_ID = "u-arbiter-erin"
OTHER_ARBITER_ID = "u-arbiter-frank"
PENDING_ID = "u-pending-gina"

CUSTOMER = Actor(CUSTOMER_ID, "customer")
OTHER_CUSTOMER = Actor(OTHER_CUSTOMER_ID, "customer")
EXECUTOR = Actor(EXECUTOR_ID, "executor")
OTHER_EXECUTOR = Actor(OTHER_EXECUTOR_ID, "executor")
ARBITER = Actor(ARBITER_ID, "arbiter")
OTHER_ARBITER = Actor(OTHER_ARBITER_ID, "arbiter")

SESSIONS: dict[str, dict[str, str]] = {
    "tok-alice": {"account_id": CUSTOMER_ID, "role": "customer"},
    "tok-dave": {"account_id": OTHER_CUSTOMER_ID, "role": "customer"},
    "tok-bob": {"account_id": EXECUTOR_ID, "role": "executor"},
    "tok-carol": {"account_id": OTHER_EXECUTOR_ID, "role": "executor"},
    "tok-erin": {"account_id": ARBITER_ID, "role": "arbiter"},
    "tok-frank": {"account_id": OTHER_ARBITER_ID, "role": "arbiter"},
    "tok-gina": {"account_id": PENDING_ID, "role": "pending"},
}

T0 = datetime(2025, 1, 1, tzinfo=UTC)


def at(hours: float = 0, days: float = 0, minutes: float = 0) -> datetime:
    """A moment relative to the fixed test epoch."""
    return T0 + timedelta(days=days, hours=hours, minutes=minutes)


def iso(moment: datetime) -> str:
    """Render a moment the way the store persists it."""
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


def auth(token: str) -> dict[str, str]:
    """Authorization header for a session token."""
    return {"Authorization": f"Bearer {token}"}


async def resolve_session(token: str) -> dict[str, Any]:
    """Stand-in for IdentityClient.resolve_session backed by SESSIONS."""
    session = SESSIONS.get(token)
    if session is None:
        raise ServiceError("UNAUTHORIZED", "Session is not valid", 401, {})
    return dict(session)


def make_config_yaml(
    db_path: str,
    log_directory: str,
    *,
    scheduler_enabled: bool = False,
    unknown_key: bool = False,
) -> str:
    """Complete settlement configuration used by tests."""
    extra = "  unknown_field: true\n" if unknown_key else ""
    return f"""\
service:
  name: "settlement"
  version: "0.1.0"
{extra}server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_directory}"
  retention_days: 7
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  session_path: "/sessions/resolve"
  timeout_seconds: 10
notifications:
  base_url: "http://localhost:8011"
  notify_path: "/notifications"
  timeout_seconds: 5
  queue_size: 100
lifecycle:
  start_window_seconds: 43200
  execution_window_seconds: 86400
  pause_min_seconds: 300
  pause_max_seconds: 86400
  pause_auto_accept_seconds: 43200
scheduler:
  enabled: {"true" if scheduler_enabled else "false"}
  initial_delay_seconds: 5
  interval_seconds: 60
  batch_size: 50
disputes:
  sla_seconds: 86400
  max_detail_length: 4000
request:
  max_body_size: 1048576
"""
