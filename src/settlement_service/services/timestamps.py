"""UTC timestamp helpers.

Timestamps are persisted as ISO 8601 strings with microsecond precision and a
``Z`` suffix, so comparing two stored values as strings compares them in time.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_iso(moment: datetime) -> str:
    """Render an aware datetime in the stored format."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso(now: datetime | None = None) -> str:
    """Return ``now`` (or the current time) in the stored format."""
    return to_iso(now if now is not None else utc_now())


def parse_iso(value: str | None) -> datetime | None:
    """Parse a stored timestamp; ``None`` passes through."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def add_ms(moment: datetime, milliseconds: int) -> str:
    """Shift ``moment`` by a number of milliseconds and render it."""
    return to_iso(moment + timedelta(milliseconds=milliseconds))


def ms_between(start: datetime, end: datetime) -> int:
    """Whole milliseconds from ``start`` to ``end`` (negative if end is earlier)."""
    delta = end - start
    return (delta.days * 86_400_000) + (delta.seconds * 1000) + (delta.microseconds // 1000)
