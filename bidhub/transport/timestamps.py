"""Timestamp helpers enforcing canonical ISO-8601 formatting."""

from __future__ import annotations

from datetime import datetime, timezone

from ..auction.errors import ClientInputError


class TimestampError(ClientInputError):
    """Raised when timestamps are malformed or lack a timezone."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    if not value:
        raise TimestampError("timestamp missing")
    if not isinstance(value, str):
        raise TimestampError("timestamp must be a string")
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise TimestampError("timestamp is not ISO-8601 compatible") from exc
    if dt.tzinfo is None:
        raise TimestampError("timestamp must include timezone information")
    return dt.astimezone(timezone.utc)


def parse_optional(value: str | None) -> datetime | None:
    if value is None or value == "":
        return None
    return parse_timestamp(value)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
