from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

# Services take a clock callable so tests can pin time.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def to_epoch(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def from_epoch(value: int | float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)
