"""Time utilities: timezone-aware helpers shared across modules."""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def now_utc() -> datetime:
    """Return current UTC datetime with tzinfo set."""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)
