"""
Storage access for rooms, users and bookings.

Repositories wrap a SQLAlchemy session and never commit; the service layer
owns the transaction boundary. Overlap filtering always goes through
``intervals.overlap_clause``.
"""

from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models
from .intervals import overlap_clause
from .models import BookingStatus, RoomType


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: int, lock: bool = False) -> Optional[models.User]:
        """
        Fetch a user by id.

        Parameters
        ----------
        user_id : int
            User identifier.
        lock : bool
            When True, read the row ``FOR UPDATE`` so concurrent bookings by
            the same user serialize on it.
        """
        query = self.db.query(models.User).filter(models.User.id == user_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def get_by_username(self, username: str) -> Optional[models.User]:
        return self.db.query(models.User).filter(models.User.username == username).first()

    def add(self, user: models.User) -> models.User:
        self.db.add(user)
        self.db.flush()
        return user


class RoomRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, room_id: int, lock: bool = False) -> Optional[models.Room]:
        query = self.db.query(models.Room).filter(models.Room.id == room_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def get_by_name(self, name: str) -> Optional[models.Room]:
        return self.db.query(models.Room).filter(models.Room.name == name).first()

    def list_active(
        self,
        room_type: Optional[RoomType] = None,
        min_capacity: Optional[int] = None,
        name_contains: Optional[str] = None,
    ) -> List[models.Room]:
        """Active rooms matching the optional filters, ordered by id."""
        query = self.db.query(models.Room).filter(models.Room.is_active.is_(True))
        if room_type is not None:
            query = query.filter(models.Room.room_type == room_type)
        if min_capacity is not None:
            query = query.filter(models.Room.capacity >= min_capacity)
        if name_contains:
            query = query.filter(models.Room.name.ilike(f"%{name_contains.strip()}%"))
        return query.order_by(models.Room.id).all()

    def add(self, room: models.Room) -> models.Room:
        self.db.add(room)
        self.db.flush()
        return room

    def delete(self, room: models.Room) -> None:
        self.db.delete(room)
        self.db.flush()

    def count(self, active_only: bool = False, room_type: Optional[RoomType] = None) -> int:
        query = self.db.query(func.count(models.Room.id))
        if active_only:
            query = query.filter(models.Room.is_active.is_(True))
        if room_type is not None:
            query = query.filter(models.Room.room_type == room_type)
        return int(query.scalar() or 0)


class BookingRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, booking_id: int) -> Optional[models.Booking]:
        return (
            self.db.query(models.Booking)
            .filter(models.Booking.id == booking_id)
            .first()
        )

    def add(self, booking: models.Booking) -> models.Booking:
        self.db.add(booking)
        self.db.flush()
        return booking

    def find_active_overlapping(
        self,
        start: datetime,
        end: datetime,
        room_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> List[models.Booking]:
        """
        Active bookings overlapping ``[start, end)`` for a room and/or a user.

        Parameters
        ----------
        start, end : datetime
            Queried half-open interval.
        room_id : Optional[int]
            Restrict to one room.
        user_id : Optional[int]
            Restrict to one owner.

        Returns
        -------
        List[Booking]
            Matching bookings ordered by start time.
        """
        query = (
            self.db.query(models.Booking)
            .filter(models.Booking.status == BookingStatus.ACTIVE)
            .filter(overlap_clause(models.Booking.start_time, models.Booking.end_time, start, end))
        )
        if room_id is not None:
            query = query.filter(models.Booking.room_id == room_id)
        if user_id is not None:
            query = query.filter(models.Booking.user_id == user_id)
        return query.order_by(models.Booking.start_time, models.Booking.id).all()

    def find_busy_room_ids(self, start: datetime, end: datetime) -> Set[int]:
        """Ids of rooms holding at least one active booking overlapping ``[start, end)``."""
        rows = (
            self.db.query(models.Booking.room_id)
            .filter(models.Booking.status == BookingStatus.ACTIVE)
            .filter(overlap_clause(models.Booking.start_time, models.Booking.end_time, start, end))
            .distinct()
            .all()
        )
        return {row[0] for row in rows}

    def find_active_expired(self, now: datetime) -> List[models.Booking]:
        return (
            self.db.query(models.Booking)
            .filter(models.Booking.status == BookingStatus.ACTIVE)
            .filter(models.Booking.end_time < now)
            .order_by(models.Booking.id)
            .all()
        )

    def find_for_room(
        self, room_id: int, status: Optional[BookingStatus] = None
    ) -> List[models.Booking]:
        return self.find_all(status=status, room_id=room_id)

    def find_for_user(
        self, user_id: int, status: Optional[BookingStatus] = None
    ) -> List[models.Booking]:
        return self.find_all(status=status, user_id=user_id)

    def find_all(
        self,
        status: Optional[BookingStatus] = None,
        room_id: Optional[int] = None,
        user_id: Optional[int] = None,
        starts_from: Optional[datetime] = None,
        starts_before: Optional[datetime] = None,
    ) -> List[models.Booking]:
        """Bookings matching all given filters, newest start first."""
        query = self.db.query(models.Booking)
        if status is not None:
            query = query.filter(models.Booking.status == status)
        if room_id is not None:
            query = query.filter(models.Booking.room_id == room_id)
        if user_id is not None:
            query = query.filter(models.Booking.user_id == user_id)
        if starts_from is not None:
            query = query.filter(models.Booking.start_time >= starts_from)
        if starts_before is not None:
            query = query.filter(models.Booking.start_time < starts_before)
        return query.order_by(models.Booking.start_time.desc(), models.Booking.id.desc()).all()

    def has_any_for_room(self, room_id: int) -> bool:
        q = self.db.query(models.Booking).filter(models.Booking.room_id == room_id)
        return self.db.query(q.exists()).scalar()

    def count_by_status(self) -> Dict[BookingStatus, int]:
        rows = (
            self.db.query(models.Booking.status, func.count(models.Booking.id))
            .group_by(models.Booking.status)
            .all()
        )
        counts = {booking_status: 0 for booking_status in BookingStatus}
        for booking_status, count in rows:
            counts[BookingStatus(booking_status)] = int(count)
        return counts

    def transition_status(
        self,
        booking_id: int,
        from_status: BookingStatus,
        to_status: BookingStatus,
        cancelled_at: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-set a booking's status.

        The row is only written while it still holds ``from_status``, so a
        transition racing with another one on the same booking applies at
        most once.

        Returns
        -------
        bool
            True if this call performed the transition.
        """
        values = {models.Booking.status: to_status}
        if to_status == BookingStatus.CANCELLED:
            values[models.Booking.cancelled_at] = cancelled_at
        updated = (
            self.db.query(models.Booking)
            .filter(models.Booking.id == booking_id)
            .filter(models.Booking.status == from_status)
            .update(values, synchronize_session="fetch")
        )
        return updated == 1
