from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable

from .errors import InvalidWindow


@dataclass(frozen=True, order=True)
class Interval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        validate_window(self.start, self.end, "Interval")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "Interval") -> bool:
        return has_time_overlap(self.start, self.end, other.start, other.end)

    def contains(self, start: datetime, end: datetime) -> bool:
        return self.start <= start and end <= self.end

    def to_dict(self) -> dict[str, str]:
        return {
            "start": self.start.isoformat(timespec="minutes"),
            "end": self.end.isoformat(timespec="minutes"),
        }


def validate_window(start: datetime, end: datetime, label: str = "Reservation") -> None:
    """Reject windows that are empty, inverted or carry a UTC offset; all times are local."""
    if start.tzinfo is not None or end.tzinfo is not None:
        raise InvalidWindow(f"{label} times must not carry a UTC offset.")
    if start >= end:
        raise InvalidWindow(f"{label} start time must be earlier than end time.")


def has_time_overlap(new_start: datetime, new_end: datetime, exist_start: datetime, exist_end: datetime) -> bool:
    """Return True when two time intervals overlap by even one minute.

    Intervals are treated as half-open ranges: [start, end)
    so touching boundaries (e.g. 10:00-11:00 and 11:00-12:00) do not overlap.
    """
    if new_start >= new_end:
        raise InvalidWindow("new_start must be earlier than new_end.")
    if exist_start >= exist_end:
        raise InvalidWindow("exist_start must be earlier than exist_end.")

    return new_start < exist_end and exist_start < new_end


def subtract(intervals: Iterable[Interval], cut: Interval) -> list[Interval]:
    """Remove ``cut`` from every interval; each one leaves zero, one or two remainders."""
    remaining: list[Interval] = []
    for interval in intervals:
        if not interval.overlaps(cut):
            remaining.append(interval)
            continue
        if interval.start < cut.start:
            remaining.append(Interval(interval.start, cut.start))
        if cut.end < interval.end:
            remaining.append(Interval(cut.end, interval.end))
    return remaining


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    merged: list[Interval] = []
    for interval in sorted(intervals):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = Interval(last.start, interval.end)
            continue
        merged.append(interval)
    return merged


def day_bounds(target_date: date) -> Interval:
    start = datetime.combine(target_date, time(0, 0))
    return Interval(start, start + timedelta(days=1))


def clip(interval: Interval, bounds: Interval) -> Interval | None:
    start = max(interval.start, bounds.start)
    end = min(interval.end, bounds.end)
    if start >= end:
        return None
    return Interval(start, end)


def split_by_day(start: datetime, end: datetime) -> list[Interval]:
    """Cut a window into per-calendar-day segments."""
    window = Interval(start, end)
    segments: list[Interval] = []
    cursor = window.start.date()
    while True:
        bounds = day_bounds(cursor)
        if bounds.start >= window.end:
            break
        segment = clip(window, bounds)
        if segment is not None:
            segments.append(segment)
        cursor += timedelta(days=1)
    return segments


def covers(intervals: Iterable[Interval], start: datetime, end: datetime) -> bool:
    return any(interval.contains(start, end) for interval in intervals)
