from collections.abc import Callable
from datetime import datetime, timedelta, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def compute_deadline(started_at: datetime, budget_seconds: int, safety_buffer_seconds: int) -> datetime:
    """Deadline for a time-boxed run: the platform budget minus a safety buffer."""
    usable = max(budget_seconds - safety_buffer_seconds, 1)
    return started_at + timedelta(seconds=usable)
