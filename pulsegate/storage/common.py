"""Time and serialization helpers shared by the store implementations and models."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return as_utc(parsed)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with stored timestamps."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def seconds_until(expires_at: datetime, now: datetime) -> int:
    """TTL for a store key expiring at ``expires_at``, clamped to at least 1s."""
    return max(1, int((expires_at - now).total_seconds()))


def canonical_json(payload: Any) -> str:
    """Stable JSON encoding used wherever bytes are hashed."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
