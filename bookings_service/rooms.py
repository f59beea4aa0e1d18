"""Room administration and browsing."""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .database import run_in_transaction
from .errors import Conflict, InvalidRange, NotFound
from .intervals import utc_now
from .logger import get_logger
from .models import BookingStatus, Requester, Room, RoomType
from .repository import BookingRepository, RoomRepository
from .service import ensure_admin

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoomStats:
    total: int
    active: int
    regular: int
    vip: int


class RoomService:
    """
    Admin operations on rooms.

    Deleting a room that was ever booked only deactivates it, so booking
    history keeps a valid room reference; a room with active bookings cannot
    be deleted at all.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.rooms = RoomRepository(db)
        self.bookings = BookingRepository(db)

    def _transaction(self, operation):
        return run_in_transaction(self.db, operation, retries=self.settings.transaction_retries)

    def _get(self, room_id: int) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            raise NotFound("Room not found")
        return room

    def get_room(self, room_id: int) -> Room:
        return self._transaction(lambda: self._get(room_id))

    def list_rooms(
        self,
        requester: Requester,
        room_type: Optional[RoomType] = None,
        search: Optional[str] = None,
        min_capacity: Optional[int] = None,
    ) -> List[Room]:
        """
        Browse active rooms without a time window.

        VIP rooms are only listed for VIP-eligible requesters; asking for the
        VIP type without that entitlement yields an empty list. ``search``
        matches a case-insensitive substring of the room name.
        """
        if room_type == RoomType.VIP and not requester.is_vip_eligible:
            return []

        def operation():
            rooms = self.rooms.list_active(
                room_type=room_type, min_capacity=min_capacity, name_contains=search
            )
            return [r for r in rooms if requester.is_vip_eligible or not r.is_vip]

        return self._transaction(operation)

    def create_room(
        self,
        requester: Requester,
        name: str,
        capacity: int,
        room_type: RoomType = RoomType.REGULAR,
        equipment: Iterable[str] = (),
    ) -> Room:
        ensure_admin(requester)
        if capacity < 1:
            raise InvalidRange("capacity must be at least 1")

        def operation():
            if self.rooms.get_by_name(name) is not None:
                raise Conflict("Room with this name already exists")
            room = Room(
                name=name,
                capacity=capacity,
                room_type=room_type,
                is_active=True,
                created_at=utc_now(),
            )
            room.equipment_tags = equipment
            try:
                return self.rooms.add(room)
            except IntegrityError:
                # a concurrent create took the name first
                raise Conflict("Room with this name already exists")

        room = self._transaction(operation)
        logger.info("Room %s (%s) created by user %s", room.id, room.name, requester.user_id)
        return room

    def update_room(
        self,
        requester: Requester,
        room_id: int,
        name: Optional[str] = None,
        capacity: Optional[int] = None,
        room_type: Optional[RoomType] = None,
        equipment: Optional[Iterable[str]] = None,
    ) -> Room:
        """
        Apply the provided fields to a room.

        Existing bookings are left untouched when the capacity shrinks; the
        capacity rule only applies at booking creation.
        """
        ensure_admin(requester)
        if capacity is not None and capacity < 1:
            raise InvalidRange("capacity must be at least 1")

        def operation():
            room = self._get(room_id)
            if name is not None and name != room.name:
                existing = self.rooms.get_by_name(name)
                if existing is not None and existing.id != room.id:
                    raise Conflict("Room with this name already exists")
                room.name = name
            if capacity is not None:
                room.capacity = capacity
            if room_type is not None:
                room.room_type = room_type
            if equipment is not None:
                room.equipment_tags = equipment
            try:
                self.db.flush()
            except IntegrityError:
                raise Conflict("Room with this name already exists")
            return room

        return self._transaction(operation)

    def delete_room(self, requester: Requester, room_id: int) -> bool:
        """
        Remove a room, or deactivate it when it has booking history.

        Returns
        -------
        bool
            True if the room was soft-deleted, False if it was removed.

        Raises
        ------
        NotFound
            Unknown room.
        Conflict
            The room still has active bookings.
        """
        ensure_admin(requester)

        def operation():
            room = self.rooms.get(room_id, lock=True)
            if room is None:
                raise NotFound("Room not found")
            if self.bookings.find_for_room(room.id, status=BookingStatus.ACTIVE):
                raise Conflict("Cannot delete a room with active bookings")
            if self.bookings.has_any_for_room(room.id):
                room.is_active = False
                self.db.flush()
                return True
            self.rooms.delete(room)
            return False

        soft_deleted = self._transaction(operation)
        logger.info(
            "Room %s %s by user %s",
            room_id, "deactivated" if soft_deleted else "deleted", requester.user_id,
        )
        return soft_deleted

    def restore_room(self, requester: Requester, room_id: int) -> Room:
        ensure_admin(requester)

        def operation():
            room = self._get(room_id)
            room.is_active = True
            self.db.flush()
            return room

        return self._transaction(operation)

    def room_statistics(self, requester: Requester) -> RoomStats:
        ensure_admin(requester)

        def operation():
            return RoomStats(
                total=self.rooms.count(),
                active=self.rooms.count(active_only=True),
                regular=self.rooms.count(active_only=True, room_type=RoomType.REGULAR),
                vip=self.rooms.count(active_only=True, room_type=RoomType.VIP),
            )

        return self._transaction(operation)
