"""Datetime parsing: lax input -> strict timezone-aware UTC output."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

import pendulum
from pendulum.parsing.exceptions import ParserError

_RELATIVE_RE = re.compile(r"^now(?:\s*([+-])\s*(\d+)\s*([smhdw]))?$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a strict timezone-aware datetime.

    Accepts various formats:
    - 2026-02-02 22:21:29.975359+00
    - 2026-02-02T22:21:29Z
    - 2026-02-02 22:21
    - 2026-02-02

    Missing timezone defaults to default_tz.
    Missing time components default to zeros.
    Raises ValueError if the string cannot be parsed.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    value_str = value.strip()

    try:
        parsed = pendulum.parse(value_str, tz=default_tz, strict=False)
    except (ParserError, ValueError) as exc:
        raise ValueError(f"Invalid date or datetime: {value_str!r}") from exc
    if not isinstance(parsed, pendulum.DateTime):
        if not isinstance(parsed, pendulum.Date):
            raise ValueError(f"Invalid date or datetime: {value_str!r}")
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(parsed.year, parsed.month, parsed.day, tz=default_tz)
    return parsed  # type: ignore[return-value]


def is_date_only(value: str) -> bool:
    """True for literals like ``2026-02-02`` that denote a whole day."""
    return _DATE_ONLY_RE.match(value.strip()) is not None


def is_relative(value: str) -> bool:
    """True for ``now``, ``now-7d``, ``now+2h`` and friends."""
    return _RELATIVE_RE.match(value.strip()) is not None


def resolve_relative(value: str, now: datetime) -> datetime:
    """Resolve a relative time expression against ``now``."""
    match = _RELATIVE_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid relative time: {value!r}")
    sign, amount, unit = match.groups()
    if sign is None:
        return now
    delta = timedelta(seconds=int(amount) * _UNIT_SECONDS[unit.lower()])
    return now - delta if sign == "-" else now + delta


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def from_timestamp(timestamp: float) -> datetime:
    """Convert a POSIX timestamp to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp, UTC)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.isoformat()
