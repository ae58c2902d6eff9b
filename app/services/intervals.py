from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


class BookingError(Exception):
    pass


class InvalidIntervalError(BookingError, ValueError):
    pass


@dataclass(frozen=True)
class Interval:
    """Half-open time range ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise InvalidIntervalError(
                f"Interval start {self.start.isoformat()} must be before end {self.end.isoformat()}.",
            )

    def overlaps(self, other: Interval) -> bool:
        return overlaps(self, other)

    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


def overlaps(a: Interval, b: Interval) -> bool:
    # Touching endpoints (a.end == b.start) do not count as overlap.
    return a.start < b.end and b.start < a.end
