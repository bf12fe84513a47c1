"""
Backoff policy for outbound queue retries.

A fixed table maps the retry number to a wait. Attempts past the end of
the table reuse its last entry:

    attempt 1 → 60s, 2 → 300s, 3 → 1800s, 4+ → 1800s
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

DEFAULT_SCHEDULE: tuple[int, ...] = (60, 300, 1800)


def backoff_seconds(attempt: int, schedule: Sequence[int] = DEFAULT_SCHEDULE) -> int:
    """Seconds to wait before retry number `attempt` (1-based)."""
    if not schedule:
        raise ValueError("backoff schedule must not be empty")
    index = min(max(attempt, 1), len(schedule)) - 1
    return int(schedule[index])


class BackoffPolicy:
    """Backoff schedule, validated once at construction."""

    def __init__(self, schedule: Sequence[int] = DEFAULT_SCHEDULE):
        schedule = tuple(int(s) for s in schedule)
        if not schedule:
            raise ValueError("backoff schedule must not be empty")
        if any(s < 0 for s in schedule):
            raise ValueError("backoff schedule entries must be >= 0")
        if any(later < earlier for earlier, later in zip(schedule, schedule[1:])):
            raise ValueError("backoff schedule must be non-decreasing")
        self.schedule = schedule

    def delay(self, attempt: int) -> timedelta:
        return timedelta(seconds=backoff_seconds(attempt, self.schedule))

    def next_attempt_at(self, now: datetime, attempt: int) -> datetime:
        return now + self.delay(attempt)
