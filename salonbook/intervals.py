from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, NamedTuple


class Interval(NamedTuple):
    """Half-open instant range ``[start, end)``."""

    start: datetime
    end: datetime

    def overlaps(self, other: "Interval") -> bool:
        return overlaps(self.start, self.end, other.start, other.end)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    return a_start < b_end and b_start < a_end


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort and fuse overlapping or touching intervals; empty ones are dropped."""
    ordered = sorted((i for i in intervals if i.end > i.start), key=lambda i: (i.start, i.end))
    merged: list[Interval] = []
    for current in ordered:
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            if current.end > last.end:
                merged[-1] = Interval(last.start, current.end)
            continue
        merged.append(current)
    return merged


def subtract_interval(base: Interval, cutter: Interval) -> list[Interval]:
    if not base.overlaps(cutter):
        return [base]
    remainder: list[Interval] = []
    if cutter.start > base.start:
        remainder.append(Interval(base.start, cutter.start))
    if cutter.end < base.end:
        remainder.append(Interval(cutter.end, base.end))
    return remainder


def subtract_intervals(base: Iterable[Interval], cutters: Iterable[Interval]) -> list[Interval]:
    result = list(base)
    for cutter in cutters:
        next_result: list[Interval] = []
        for interval in result:
            next_result.extend(subtract_interval(interval, cutter))
        result = next_result
    return merge_intervals(result)


def iter_starts(first: datetime, last: datetime, step_min: int) -> Iterator[datetime]:
    """Yield ``first``, ``first + step``, ... up to and including ``last``."""
    step = timedelta(minutes=step_min)
    cursor = first
    while cursor <= last:
        yield cursor
        cursor += step
