from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from app.services.intervals import Interval, InvalidIntervalError, overlaps
from app.services.slot_generator import (
    GenerationPolicy,
    WorkingHours,
    format_slot_label,
    generate_slots,
)

MONDAY_10AM = datetime(2024, 1, 15, 10, 0, tzinfo=UTC)
SATURDAY_10AM = datetime(2024, 1, 13, 10, 0, tzinfo=UTC)


def _policy(days: int = 1, minutes: int = 30, start: int = 9, end: int = 17) -> GenerationPolicy:
    return GenerationPolicy(
        horizon_days=days,
        slot_duration_minutes=minutes,
        working_hours=WorkingHours(start_hour=start, end_hour=end),
    )


def test_first_slot_starts_at_now_when_day_already_started() -> None:
    slots = generate_slots([], _policy(), MONDAY_10AM)

    assert slots[0].start == datetime(2024, 1, 15, 10, 0, tzinfo=UTC)
    assert slots[-1].end == datetime(2024, 1, 15, 17, 0, tzinfo=UTC)
    assert len(slots) == 14
    assert all(slot.end > MONDAY_10AM for slot in slots)
    assert all(slot.interval.duration_minutes() == 30 for slot in slots)


def test_full_day_before_working_hours() -> None:
    early_monday = datetime(2024, 1, 15, 7, 0, tzinfo=UTC)

    slots = generate_slots([], _policy(), early_monday)

    assert slots[0].start.hour == 9
    assert slots[0].start.minute == 0
    assert len(slots) == 16


def test_busy_interval_removes_only_overlapping_slots() -> None:
    early_monday = datetime(2024, 1, 15, 8, 0, tzinfo=UTC)
    busy = [
        Interval(
            start=datetime(2024, 1, 15, 10, 0, tzinfo=UTC),
            end=datetime(2024, 1, 15, 10, 30, tzinfo=UTC),
        ),
    ]

    slots = generate_slots(busy, _policy(), early_monday)
    starts = [slot.start for slot in slots]

    assert datetime(2024, 1, 15, 10, 0, tzinfo=UTC) not in starts
    assert datetime(2024, 1, 15, 9, 30, tzinfo=UTC) in starts
    assert datetime(2024, 1, 15, 10, 30, tzinfo=UTC) in starts
    assert len(slots) == 15


def test_no_generated_slot_intersects_any_busy_interval() -> None:
    now = datetime(2024, 1, 15, 6, 0, tzinfo=UTC)
    busy = [
        Interval(start=datetime(2024, 1, 15, 9, 10, tzinfo=UTC), end=datetime(2024, 1, 15, 9, 50, tzinfo=UTC)),
        Interval(start=datetime(2024, 1, 16, 12, 0, tzinfo=UTC), end=datetime(2024, 1, 16, 15, 0, tzinfo=UTC)),
        Interval(start=datetime(2024, 1, 17, 16, 45, tzinfo=UTC), end=datetime(2024, 1, 18, 9, 15, tzinfo=UTC)),
    ]

    slots = generate_slots(busy, _policy(days=5, minutes=20), now)

    assert slots
    for slot in slots:
        for busy_interval in busy:
            assert not overlaps(slot.interval, busy_interval)


def test_weekends_are_skipped() -> None:
    slots = generate_slots([], _policy(days=7), SATURDAY_10AM)

    days = sorted({slot.start.date() for slot in slots})
    assert [day.isoformat() for day in days] == [
        "2024-01-15",
        "2024-01-16",
        "2024-01-17",
        "2024-01-18",
        "2024-01-19",
    ]
    assert all(slot.start.weekday() < 5 for slot in slots)
    assert len(slots) == 5 * 16


def test_slots_are_in_chronological_order() -> None:
    slots = generate_slots([], _policy(days=10, minutes=60), MONDAY_10AM)

    starts = [slot.start for slot in slots]
    assert starts == sorted(starts)


def test_no_partial_trailing_slot() -> None:
    early_monday = datetime(2024, 1, 15, 0, 0, tzinfo=UTC)

    slots = generate_slots([], _policy(minutes=45), early_monday)

    assert len(slots) == 10
    assert slots[-1].start == datetime(2024, 1, 15, 15, 45, tzinfo=UTC)
    assert slots[-1].end == datetime(2024, 1, 15, 16, 30, tzinfo=UTC)


def test_zero_horizon_and_empty_working_day_yield_nothing() -> None:
    assert generate_slots([], _policy(days=0), MONDAY_10AM) == []
    assert generate_slots([], _policy(days=5, start=12, end=12), MONDAY_10AM) == []


def test_generation_uses_timezone_of_now() -> None:
    berlin = ZoneInfo("Europe/Berlin")
    now = datetime(2024, 1, 15, 7, 0, tzinfo=berlin)

    slots = generate_slots([], _policy(), now)

    assert slots[0].start == datetime(2024, 1, 15, 9, 0, tzinfo=berlin)
    assert slots[0].start.astimezone(UTC).hour == 8


def test_inputs_are_not_mutated() -> None:
    busy = [
        Interval(
            start=datetime(2024, 1, 15, 11, 0, tzinfo=UTC),
            end=datetime(2024, 1, 15, 12, 0, tzinfo=UTC),
        ),
    ]
    snapshot = list(busy)

    generate_slots(busy, _policy(), MONDAY_10AM)

    assert busy == snapshot


def test_labels_are_deterministic() -> None:
    assert format_slot_label(datetime(2024, 1, 15, 9, 5, tzinfo=UTC)) == "Jan 15, 2024 at 9:05 AM"
    assert format_slot_label(datetime(2024, 12, 3, 0, 30, tzinfo=UTC)) == "Dec 3, 2024 at 12:30 AM"
    assert format_slot_label(datetime(2024, 7, 1, 12, 0, tzinfo=UTC)) == "Jul 1, 2024 at 12:00 PM"
    assert format_slot_label(datetime(2024, 7, 1, 16, 30, tzinfo=UTC)) == "Jul 1, 2024 at 4:30 PM"

    slots = generate_slots([], _policy(), MONDAY_10AM)
    assert slots[0].label == "Jan 15, 2024 at 10:00 AM"


def test_invalid_policies_are_rejected() -> None:
    with pytest.raises(InvalidIntervalError):
        GenerationPolicy(horizon_days=-1)
    with pytest.raises(InvalidIntervalError):
        GenerationPolicy(slot_duration_minutes=0)
    with pytest.raises(InvalidIntervalError):
        WorkingHours(start_hour=17, end_hour=9)
    with pytest.raises(InvalidIntervalError):
        WorkingHours(start_hour=9, end_hour=24)


def test_naive_now_is_rejected() -> None:
    with pytest.raises(InvalidIntervalError):
        generate_slots([], _policy(), datetime(2024, 1, 15, 10, 0))


def test_slot_ending_exactly_at_now_is_skipped() -> None:
    now = datetime(2024, 1, 15, 9, 30, tzinfo=UTC)

    slots = generate_slots([], _policy(), now)

    assert slots[0].start == now
    assert slots[0].end == now + timedelta(minutes=30)


def test_slots_keep_real_duration_across_spring_forward_gap() -> None:
    tehran = ZoneInfo("Asia/Tehran")
    # Clocks in Tehran jumped from 00:00 to 01:00 on Monday 2021-03-22.
    sunday_noon = datetime(2021, 3, 21, 12, 0, tzinfo=tehran)

    slots = generate_slots([], _policy(days=2, start=0, end=3), sunday_noon)

    assert len(slots) == 4
    assert slots[0].start.astimezone(UTC) == datetime(2021, 3, 21, 20, 30, tzinfo=UTC)
    assert slots[-1].end.astimezone(UTC) == datetime(2021, 3, 21, 22, 30, tzinfo=UTC)
    assert all(
        slot.end.astimezone(UTC) - slot.start.astimezone(UTC) == timedelta(minutes=30) for slot in slots
    )
