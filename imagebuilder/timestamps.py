"""Timezone-aware UTC timestamp utilities.

Events and build results carry these timestamps so every serialized value
includes a +00:00 offset.
"""

import time
from datetime import datetime, timezone


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Return the current UTC time as an ISO 8601 string with +00:00 offset."""
    return now().isoformat()


def monotonic() -> float:
    """Clock used for deadlines and durations (immune to wall-clock jumps)."""
    return time.monotonic()
