"""Candidate slot generation over a horizon of working days.

Slots are laid on a fixed grid that starts at the working-hours start of each
weekday and advances by the slot duration. Slots that already ended, that run
past the end of the working day, or that overlap a busy interval are dropped.
Calendar days and working hours are read in the timezone carried by ``now``;
slot boundaries are stepped as absolute instants.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from app.services.intervals import Interval, InvalidIntervalError, overlaps

_MONTH_ABBREVIATIONS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)
# datetime.weekday(): Monday is 0, Saturday 5, Sunday 6.
WEEKEND_WEEKDAYS = frozenset({5, 6})


@dataclass(frozen=True)
class WorkingHours:
    start_hour: int = 9
    end_hour: int = 17

    def __post_init__(self) -> None:
        for hour in (self.start_hour, self.end_hour):
            if not 0 <= hour <= 23:
                raise InvalidIntervalError(f"Working hour must be between 0 and 23, got {hour}.")
        if self.start_hour > self.end_hour:
            raise InvalidIntervalError(
                f"Working hours start {self.start_hour} must not be after end {self.end_hour}.",
            )


@dataclass(frozen=True)
class GenerationPolicy:
    horizon_days: int = 14
    slot_duration_minutes: int = 30
    working_hours: WorkingHours = WorkingHours()

    def __post_init__(self) -> None:
        if self.horizon_days < 0:
            raise InvalidIntervalError(f"horizon_days must not be negative, got {self.horizon_days}.")
        if self.slot_duration_minutes <= 0:
            raise InvalidIntervalError(
                f"slot_duration_minutes must be positive, got {self.slot_duration_minutes}.",
            )


@dataclass(frozen=True)
class Slot:
    interval: Interval
    label: str

    @property
    def start(self) -> datetime:
        return self.interval.start

    @property
    def end(self) -> datetime:
        return self.interval.end


def format_slot_label(value: datetime) -> str:
    """Render ``value`` as e.g. ``Jan 15, 2024 at 9:30 AM``.

    Month names are fixed so the label does not depend on the process locale.
    """
    month = _MONTH_ABBREVIATIONS[value.month - 1]
    hour_12 = value.hour % 12 or 12
    meridiem = "AM" if value.hour < 12 else "PM"
    return f"{month} {value.day}, {value.year} at {hour_12}:{value.minute:02d} {meridiem}"


def generate_slots(
    busy: Sequence[Interval],
    policy: GenerationPolicy,
    now: datetime,
) -> list[Slot]:
    if now.tzinfo is None:
        raise InvalidIntervalError("now must be timezone aware.")

    zone = now.tzinfo
    slots: list[Slot] = []
    step = timedelta(minutes=policy.slot_duration_minutes)
    today = now.date()

    for day_offset in range(policy.horizon_days):
        day = today + timedelta(days=day_offset)
        if day.weekday() in WEEKEND_WEEKDAYS:
            continue

        day_start = _wall_clock_instant(day, policy.working_hours.start_hour, zone)
        day_end = _wall_clock_instant(day, policy.working_hours.end_hour, zone)

        # Boundaries are absolute instants; every slot lasts exactly `step`.
        cursor = day_start
        while True:
            slot_end = cursor + step
            if slot_end > day_end:
                break
            if slot_end <= now:
                cursor = slot_end
                continue

            candidate = Interval(start=cursor.astimezone(zone), end=slot_end.astimezone(zone))
            if not busy or not any(overlaps(candidate, busy_interval) for busy_interval in busy):
                slots.append(Slot(interval=candidate, label=format_slot_label(candidate.start)))
            cursor = slot_end

    return slots


def _wall_clock_instant(day: date, hour: int, zone: tzinfo) -> datetime:
    # A wall time inside a DST gap is read with the offset in force before the gap.
    return datetime.combine(day, time(hour=hour), tzinfo=zone).astimezone(UTC)
