"""
Timestamp utilities for consistent time handling across the system.
"""

import time

MS_PER_DAY = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Return the current time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


def days_to_ms(days: float) -> float:
    """Convert a duration in days to milliseconds."""
    return days * MS_PER_DAY

