"""
Booking lifecycle rules.

::

    active ──cancel (owner/admin, before the cutoff)──> cancelled
       └────complete (sweeper, once end_time passed)──> completed

``cancelled`` and ``completed`` are terminal. These functions only decide;
the status write itself is a compare-and-set done by the repository.
"""

from datetime import datetime, timedelta
from typing import Dict, FrozenSet

from .errors import AlreadyFinalized, Forbidden, TooLateToCancel
from .models import Booking, BookingStatus, Requester, TERMINAL_STATUSES

DEFAULT_CANCELLATION_WINDOW = timedelta(hours=1)

ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.ACTIVE: frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED}),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
}


def is_terminal(booking_status: BookingStatus) -> bool:
    return booking_status in TERMINAL_STATUSES


def cancellation_deadline(booking: Booking, window: timedelta = DEFAULT_CANCELLATION_WINDOW) -> datetime:
    """Last instant (exclusive) at which the booking may still be cancelled."""
    return booking.start_time - window


def ensure_transition_allowed(booking: Booking, target: BookingStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[booking.status]:
        raise AlreadyFinalized(
            f"Booking is already {booking.status.value}",
            details={"booking_id": booking.id, "status": booking.status.value},
        )


def ensure_can_manage(booking: Booking, requester: Requester) -> None:
    """Only the owner or an admin may act on a booking."""
    if requester.is_admin or booking.user_id == requester.user_id:
        return
    raise Forbidden("Not allowed to manage this booking")


def ensure_cancellable(
    booking: Booking,
    requester: Requester,
    now: datetime,
    window: timedelta = DEFAULT_CANCELLATION_WINDOW,
) -> None:
    """
    Validate an ``active -> cancelled`` transition.

    Parameters
    ----------
    booking : Booking
        Booking to cancel.
    requester : Requester
        Caller asking for the cancellation.
    now : datetime
        Current time (naive UTC).
    window : timedelta
        Period before the start during which cancelling is refused.

    Raises
    ------
    Forbidden
        Caller is neither the owner nor an admin.
    AlreadyFinalized
        Booking is cancelled or completed.
    TooLateToCancel
        ``now`` is not before ``start_time - window``.
    """
    ensure_can_manage(booking, requester)
    ensure_transition_allowed(booking, BookingStatus.CANCELLED)
    deadline = cancellation_deadline(booking, window)
    if not now < deadline:
        raise TooLateToCancel(
            "Bookings can only be cancelled up to "
            f"{int(window.total_seconds() // 60)} minutes before they start",
            details={"booking_id": booking.id, "deadline": deadline.isoformat()},
        )


def can_complete(booking: Booking, now: datetime) -> bool:
    return booking.status == BookingStatus.ACTIVE and now >= booking.end_time

