from __future__ import annotations

from datetime import datetime, tzinfo
from typing import Sequence


TimeTriple = tuple[int, int, int]


def _compare(a: Sequence[int], b: Sequence[int]) -> int:
    for x, y in zip(a[:3], b[:3]):
        if x != y:
            return -1 if x < y else 1
    return 0


def week_position(moment: datetime) -> TimeTriple:
    """(weekday, hour, minute) with Sunday as weekday 0."""
    return (moment.isoweekday() % 7, moment.hour, moment.minute)


def in_window(now: Sequence[int], start: Sequence[int], end: Sequence[int]) -> bool:
    if _compare(start, end) <= 0:
        return _compare(start, now) <= 0 and _compare(now, end) < 0
    # Window wraps the week boundary, e.g. Friday night through Monday morning.
    return _compare(now, start) >= 0 or _compare(now, end) < 0


def is_work_time(
    windows: Sequence[Sequence[Sequence[int]]],
    now: datetime | None = None,
    *,
    tz: tzinfo | None = None,
) -> bool:
    if not windows:
        return True
    if now is None:
        now = datetime.now(tz)
    elif tz is not None and now.tzinfo is not None:
        now = now.astimezone(tz)
    position = week_position(now)
    return any(in_window(position, window[0], window[1]) for window in windows)
