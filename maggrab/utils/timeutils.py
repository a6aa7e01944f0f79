"""Epoch-millisecond clock helpers shared by the store, pipeline and scheduler."""

import time
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], int]

MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * MINUTE_MS


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def to_datetime(epoch_ms: Optional[int]) -> Optional[datetime]:
    if epoch_ms is None:
        return None
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
