"""Column helpers shared by the record modules."""

import json
from datetime import datetime, timezone


def utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def dumps(value) -> str | None:
    return json.dumps(value, ensure_ascii=False, default=str) if value is not None else None


def loads(value: str | None, default=None):
    return json.loads(value) if value else default
