"""Clock helpers. Components take a ``Clock`` so tests can control time."""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def epoch(clock: Clock) -> float:
    """Current clock reading as POSIX seconds."""
    return clock().timestamp()
