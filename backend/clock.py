"""
Time helpers.

All timestamps are stored as naive UTC datetimes. Components that need a
deterministic notion of "now" (scheduler, session store) accept a clock
callable defaulting to utcnow().
"""
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_z(value: Optional[datetime]) -> Optional[str]:
    """Format a naive UTC datetime for API responses."""
    if value is None:
        return None
    return value.isoformat() + "Z"
