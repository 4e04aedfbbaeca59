"""Shared utility functions used across Cadence modules."""
from __future__ import annotations

import json
import secrets
import string
from datetime import UTC, date, datetime, time
from typing import Any

_MISSING = object()
_ID_ALPHABET = string.ascii_lowercase + string.digits


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
    columns; those are stored as UTC, so naive values are tagged, not shifted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=UTC)


def new_id() -> str:
    """Generate a cuid-shaped identifier: ``c`` followed by 24 base36 chars."""
    return "c" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(24))


def normalize_repo_name(value: str | None) -> str:
    """Canonical repository identity: ``owner/name``, stripped and lowercased."""
    if not value:
        return ""
    return value.strip().strip("/").lower()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def first_line(text: str | None) -> str:
    if not text:
        return ""
    return text.splitlines()[0]
