"""
Booking creation, cancellation and queries.

``BookingService.create_booking`` is the check-then-insert path guarded for
concurrency: the requester's user row and then the room row are read with
``FOR UPDATE`` (``BEGIN IMMEDIATE`` on SQLite) so that two overlapping
requests for the same room or the same user cannot both pass the
availability and self-conflict checks.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from . import lifecycle
from .availability import AvailabilityResolver, RoomFilters
from .config import Settings, get_settings
from .database import run_in_transaction
from .errors import (
    CapacityExceeded,
    Conflict,
    Forbidden,
    InactiveResource,
    InvalidRange,
    NotFound,
)
from .intervals import overlaps, to_utc_naive, utc_now
from .logger import get_logger
from .models import Booking, BookingStatus, Requester, Room
from .notifications import NotificationDispatcher, Recipient, RoomRef
from .repository import BookingRepository, RoomRepository, UserRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class BookingStats:
    total: int
    active: int
    cancelled: int
    completed: int


def ensure_time_valid(start_time: datetime, end_time: datetime) -> None:
    """
    Validate that a time range is well-formed.

    Raises
    ------
    InvalidRange
        If end_time is not strictly after start_time.
    """
    if end_time <= start_time:
        raise InvalidRange("end_time must be after start_time")


def ensure_admin(requester: Requester) -> None:
    if not requester.is_admin:
        raise Forbidden("Admin role required")


class BookingService:
    """
    Booking use cases on top of one database session.

    Parameters
    ----------
    db : Session
        Session used for every operation; each public method runs in its own
        transaction and commits or rolls back before returning.
    dispatcher : Optional[NotificationDispatcher]
        Receives confirmation and cancellation events after commit.
    settings : Optional[Settings]
        Runtime settings; defaults to the process settings.
    clock : Callable[[], datetime]
        Source of "now" as naive UTC.
    """

    def __init__(
        self,
        db: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.clock = clock
        self.users = UserRepository(db)
        self.rooms = RoomRepository(db)
        self.bookings = BookingRepository(db)
        self.availability = AvailabilityResolver(db)

    @property
    def cancellation_window(self) -> timedelta:
        return timedelta(minutes=self.settings.cancellation_window_minutes)

    def _transaction(self, operation):
        return run_in_transaction(self.db, operation, retries=self.settings.transaction_retries)

    def _notify(self, event: str, *args) -> None:
        # the booking is already committed; delivery problems only get logged
        if self.dispatcher is None:
            return
        try:
            getattr(self.dispatcher, event)(*args)
        except Exception:
            logger.warning("Could not dispatch %s notification", event, exc_info=True)

    # ---------- Availability ----------

    def check_availability(self, room_id: int, start: datetime, end: datetime) -> bool:
        """Return whether an existing room is free for ``[start, end)``."""
        start, end = to_utc_naive(start), to_utc_naive(end)
        ensure_time_valid(start, end)

        def operation():
            room = self.rooms.get(room_id)
            if room is None:
                raise NotFound("Room not found")
            return self.availability.is_available(room, start, end)

        return self._transaction(operation)

    def find_available_rooms(
        self,
        requester: Requester,
        start: datetime,
        end: datetime,
        filters: Optional[RoomFilters] = None,
    ) -> List[Room]:
        start, end = to_utc_naive(start), to_utc_naive(end)
        ensure_time_valid(start, end)
        return self._transaction(
            lambda: self.availability.find_available(
                start, end, filters, requester_is_vip_eligible=requester.is_vip_eligible
            )
        )

    def find_conflicting_bookings(
        self, requester: Requester, room_id: int, start: datetime, end: datetime
    ) -> List[Booking]:
        ensure_admin(requester)
        start, end = to_utc_naive(start), to_utc_naive(end)
        ensure_time_valid(start, end)

        def operation():
            room = self.rooms.get(room_id)
            if room is None:
                raise NotFound("Room not found")
            return self.availability.find_conflicting(room, start, end)

        return self._transaction(operation)

    # ---------- Create booking ----------

    def _validate_schedule(self, start: datetime, end: datetime, now: datetime) -> None:
        ensure_time_valid(start, end)
        earliest = now + timedelta(seconds=self.settings.min_lead_seconds)
        if not start > earliest:
            raise InvalidRange(
                "start_time must be in the future",
                details={"start_time": start.isoformat(), "now": now.isoformat()},
            )

    @staticmethod
    def _validate_participants(participants_count: int, room: Room) -> None:
        if participants_count < 1:
            raise InvalidRange("participants_count must be at least 1")
        if participants_count > room.capacity:
            raise CapacityExceeded(
                "Number of participants exceeds room capacity",
                details={"capacity": room.capacity, "participants_count": participants_count},
            )

    def create_booking(
        self,
        requester: Requester,
        room_id: int,
        start: datetime,
        end: datetime,
        participants_count: int,
    ) -> Booking:
        """
        Create an active booking for the requester.

        Checks run in this order and stop at the first failure: requester
        enabled, room exists and is active, VIP entitlement, time range,
        participant count, room availability, requester self-conflict.

        Parameters
        ----------
        requester : Requester
            Authenticated caller; becomes the owner of the booking.
        room_id : int
            Room to book.
        start, end : datetime
            Requested half-open interval.
        participants_count : int
            Expected attendees.

        Returns
        -------
        Booking
            The committed booking.

        Raises
        ------
        NotFound, Forbidden, InactiveResource, InvalidRange,
        CapacityExceeded, Conflict, InternalFailure
        """
        start, end = to_utc_naive(start), to_utc_naive(end)
        now = self.clock()

        def operation():
            user = self.users.get(requester.user_id, lock=True)
            if user is None:
                raise NotFound("User not found")
            if not user.is_enabled:
                raise Forbidden("User account is not enabled")

            room = self.rooms.get(room_id, lock=True)
            if room is None:
                raise NotFound("Room not found")
            if not room.is_active:
                raise InactiveResource("Room is not active")
            if room.is_vip and not requester.is_vip_eligible:
                raise Forbidden("VIP rooms can only be booked by VIP users or admins")

            self._validate_schedule(start, end, now)
            self._validate_participants(participants_count, room)

            if not self.availability.is_available(room, start, end):
                raise Conflict(
                    "Room is already booked for this time range",
                    details={"room_id": room.id, "scope": "room"},
                )

            own = [
                b
                for b in self.bookings.find_active_overlapping(start, end, user_id=user.id)
                if overlaps(b.start_time, b.end_time, start, end)
            ]
            if own:
                raise Conflict(
                    "You already have a booking in this time range",
                    details={"booking_id": own[0].id, "scope": "user"},
                )

            booking = self.bookings.add(
                Booking(
                    user_id=user.id,
                    room_id=room.id,
                    start_time=start,
                    end_time=end,
                    participants_count=participants_count,
                    status=BookingStatus.ACTIVE,
                    created_at=now,
                )
            )
            return booking, Recipient(user.id, user.username, user.email), RoomRef(room.id, room.name)

        try:
            booking, recipient, room_ref = self._transaction(operation)
        except Conflict as exc:
            logger.info(
                "Booking rejected for user %s on room %s: %s",
                requester.user_id, room_id, exc.message,
            )
            raise

        logger.info(
            "Booking %s created: user=%s room=%s %s - %s",
            booking.id, booking.user_id, booking.room_id, start.isoformat(), end.isoformat(),
        )
        self._notify("booking_created", recipient, room_ref, start, end)
        return booking

    # ---------- Cancel booking ----------

    def cancel_booking(self, requester: Requester, booking_id: int) -> Booking:
        """
        Cancel an active booking.

        Raises
        ------
        NotFound
            The booking does not exist.
        Forbidden
            Requester is neither the owner nor an admin.
        AlreadyFinalized
            The booking is cancelled or completed, including when the sweeper
            completed it concurrently.
        TooLateToCancel
            The cancellation window has been reached.
        """
        now = self.clock()

        def operation():
            booking = self.bookings.get(booking_id)
            if booking is None:
                raise NotFound("Booking not found")
            lifecycle.ensure_cancellable(booking, requester, now, self.cancellation_window)
            if not self.bookings.transition_status(
                booking.id,
                BookingStatus.ACTIVE,
                BookingStatus.CANCELLED,
                cancelled_at=now,
            ):
                self.db.refresh(booking)
                lifecycle.ensure_transition_allowed(booking, BookingStatus.CANCELLED)
            user = self.users.get(booking.user_id)
            room = self.rooms.get(booking.room_id)
            return booking, Recipient(user.id, user.username, user.email), RoomRef(room.id, room.name)

        booking, recipient, room_ref = self._transaction(operation)
        logger.info("Booking %s cancelled by user %s", booking.id, requester.user_id)
        self._notify("booking_cancelled", recipient, room_ref, booking.start_time, booking.end_time)
        return booking

    # ---------- Queries ----------

    def get_booking(self, requester: Requester, booking_id: int) -> Booking:
        def operation():
            booking = self.bookings.get(booking_id)
            if booking is None:
                raise NotFound("Booking not found")
            lifecycle.ensure_can_manage(booking, requester)
            return booking

        return self._transaction(operation)

    def list_user_bookings(self, requester: Requester, active_only: bool = False) -> List[Booking]:
        status = BookingStatus.ACTIVE if active_only else None
        return self._transaction(
            lambda: self.bookings.find_for_user(requester.user_id, status=status)
        )

    def list_bookings(
        self,
        requester: Requester,
        status: Optional[BookingStatus] = None,
        room_id: Optional[int] = None,
        user_id: Optional[int] = None,
        starts_from: Optional[datetime] = None,
        starts_before: Optional[datetime] = None,
    ) -> List[Booking]:
        """Admin view of all bookings, with optional filters and start-time range."""
        ensure_admin(requester)
        starts_from = to_utc_naive(starts_from) if starts_from else None
        starts_before = to_utc_naive(starts_before) if starts_before else None
        if starts_from and starts_before:
            ensure_time_valid(starts_from, starts_before)
        return self._transaction(
            lambda: self.bookings.find_all(
                status=status,
                room_id=room_id,
                user_id=user_id,
                starts_from=starts_from,
                starts_before=starts_before,
            )
        )

    def booking_statistics(self, requester: Requester) -> BookingStats:
        ensure_admin(requester)
        counts: Dict[BookingStatus, int] = self._transaction(self.bookings.count_by_status)
        return BookingStats(
            total=sum(counts.values()),
            active=counts[BookingStatus.ACTIVE],
            cancelled=counts[BookingStatus.CANCELLED],
            completed=counts[BookingStatus.COMPLETED],
        )
