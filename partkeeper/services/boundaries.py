"""
Boundary arithmetic: interval widths, deterministic names, missing ranges.

Pure functions only; nothing here touches the database.

Naming convention (boundary names; physical tables are ``{table}_{name}``
lower-cased):
    - weekly:    2024_W07   (ISO year + ISO week)
    - monthly:   2024_02
    - quarterly: 2024_Q1
    - yearly:    2024
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterable

from partkeeper.models.schemas import CoverageGap, PartitionBoundary

DEFAULT_BOUNDARY_NAME = "DEFAULT"


class IntervalWidth(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    def floor(self, d: date) -> date:
        """Start of the interval containing ``d``."""
        if self is IntervalWidth.WEEKLY:
            return d - timedelta(days=d.weekday())
        if self is IntervalWidth.MONTHLY:
            return d.replace(day=1)
        if self is IntervalWidth.QUARTERLY:
            return date(d.year, 3 * ((d.month - 1) // 3) + 1, 1)
        return date(d.year, 1, 1)

    def advance(self, start: date) -> date:
        """Start of the interval following the one beginning at ``start``."""
        if self is IntervalWidth.WEEKLY:
            return start + timedelta(days=7)
        if self is IntervalWidth.MONTHLY:
            return _add_months(start, 1)
        if self is IntervalWidth.QUARTERLY:
            return _add_months(start, 3)
        return _add_months(start, 12)

    def name(self, start: date) -> str:
        if self is IntervalWidth.WEEKLY:
            iso_year, iso_week, _ = start.isocalendar()
            return f"{iso_year}_W{iso_week:02d}"
        if self is IntervalWidth.MONTHLY:
            return f"{start.year}_{start.month:02d}"
        if self is IntervalWidth.QUARTERLY:
            return f"{start.year}_Q{(start.month - 1) // 3 + 1}"
        return f"{start.year}"

    def boundary(self, start: date) -> PartitionBoundary:
        return PartitionBoundary(name=self.name(start), start=start, end=self.advance(start))


def _add_months(d: date, months: int) -> date:
    # Clamp to day 28 so month arithmetic never lands on a missing day.
    index = d.month - 1 + months
    return date(d.year + index // 12, index % 12 + 1, min(d.day, 28))


def bridge(start: date, end: date) -> PartitionBoundary:
    """
    Short boundary from an off-grid ``start`` up to the next aligned start.

    Named after its start date (``2024_01_31``), a form no interval width
    produces, so it cannot clash with an aligned name.
    """
    return PartitionBoundary(name=start.strftime("%Y_%m_%d"), start=start, end=end)


def as_key(value: date | datetime) -> date:
    """Reduce a reference point to the date key domain."""
    if isinstance(value, datetime):
        return value.date()
    return value


def compute_missing(
    existing: Iterable[PartitionBoundary],
    as_of: date | datetime,
    horizon: timedelta,
    width: IntervalWidth,
    epoch: date,
) -> list[PartitionBoundary]:
    """
    Boundaries that must exist so every key in ``[as_of, as_of + horizon)``
    has a partition, ordered by start.

    The look-ahead sequence continues from the latest existing ``end`` (or
    ``floor(epoch)`` on an empty catalog); an off-grid latest end is first
    bridged to the next aligned start. Holes inside the requested window
    that no existing boundary overlaps are filled on the aligned grid.
    Candidates that collide with an existing name are returned as well; the
    caller decides between "already there" and conflict.
    """
    existing = sorted(existing, key=lambda b: b.start)
    window_start = as_key(as_of)
    target = window_start + horizon

    candidates: dict[str, PartitionBoundary] = {}

    cursor = max(b.end for b in existing) if existing else width.floor(epoch)
    if cursor < target and width.floor(cursor) != cursor:
        b = bridge(cursor, width.advance(width.floor(cursor)))
        candidates[b.name] = b
        cursor = b.end
    while cursor < target:
        b = width.boundary(cursor)
        candidates.setdefault(b.name, b)
        cursor = b.end

    cursor = width.floor(window_start)
    while cursor < target:
        b = width.boundary(cursor)
        taken = any(b.overlaps(e) for e in existing) or any(b.overlaps(c) for c in candidates.values())
        if not taken:
            candidates.setdefault(b.name, b)
        cursor = b.end

    return sorted(candidates.values(), key=lambda b: b.start)


def find_gaps(boundaries: Iterable[PartitionBoundary], start: date, end: date) -> list[CoverageGap]:
    """Sub-ranges of ``[start, end)`` not covered by any boundary."""
    gaps: list[CoverageGap] = []
    cursor = start
    for b in sorted(boundaries, key=lambda b: b.start):
        if b.end <= cursor:
            continue
        if b.start >= end:
            break
        if b.start > cursor:
            gaps.append(CoverageGap(start=cursor, end=b.start))
        cursor = max(cursor, b.end)
        if cursor >= end:
            break
    if cursor < end:
        gaps.append(CoverageGap(start=cursor, end=end))
    return gaps


def find_overlaps(boundaries: Iterable[PartitionBoundary]) -> list[tuple[PartitionBoundary, PartitionBoundary]]:
    """Adjacent pairs (by start) whose ranges intersect."""
    ordered = sorted(boundaries, key=lambda b: b.start)
    return [(a, b) for a, b in zip(ordered, ordered[1:]) if a.overlaps(b)]
