"""Time-range helpers shared by every conflict check."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import and_


def utc_now() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    """
    Decide whether two half-open intervals ``[a_start, a_end)`` and
    ``[b_start, b_end)`` share at least one instant.

    Touching endpoints do not overlap: ``[0, 10)`` and ``[10, 20)`` are
    disjoint.
    """
    return a_start < b_end and b_start < a_end


def overlap_clause(start_column, end_column, start: datetime, end: datetime):
    """
    SQL form of :func:`overlaps` for a stored interval against ``[start, end)``.

    Parameters
    ----------
    start_column, end_column
        Mapped columns holding the stored interval.
    start, end : datetime
        The queried interval.

    Returns
    -------
    ColumnElement
        Criterion usable in ``Query.filter``.
    """
    return and_(start_column < end, start < end_column)
