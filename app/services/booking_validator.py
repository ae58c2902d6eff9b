from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from app.services.intervals import Interval, overlaps


def is_slot_available(
    candidate: Interval,
    busy: Sequence[Interval],
    now: datetime,
) -> bool:
    """Return whether ``candidate`` can still be booked.

    A candidate that has already started is never available. Busy intervals
    that only touch the candidate's edges do not block it.
    """
    if candidate.start <= now:
        return False
    return not any(overlaps(candidate, busy_interval) for busy_interval in busy)
