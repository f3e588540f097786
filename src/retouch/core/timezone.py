"""UTC timezone enforcement and clock helpers.

Sets the TZ environment variable to UTC and provides the timezone-aware UTC
timestamps stored in ``TIMESTAMP WITH TIME ZONE`` columns.
"""

import os
import time
from datetime import datetime, timezone

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
