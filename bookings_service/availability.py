"""Read-only answers to "is this room free?" and "which rooms are free?"."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from common.cache import delete_prefix

from .intervals import overlaps
from .logger import get_logger
from .models import Booking, Room, RoomType, parse_equipment
from .repository import BookingRepository, RoomRepository

logger = get_logger(__name__)

AVAILABILITY_CACHE_PREFIX = "rooms:available:"


def invalidate_availability_cache() -> None:
    """Drop cached available-room listings. Runs after commits, so it never raises."""
    try:
        delete_prefix(AVAILABILITY_CACHE_PREFIX)
    except Exception:
        logger.warning("Availability cache invalidation failed", exc_info=True)


@dataclass(frozen=True)
class RoomFilters:
    room_type: Optional[RoomType] = None
    min_capacity: Optional[int] = None
    equipment: List[str] = field(default_factory=list)

    def cache_fingerprint(self) -> str:
        return "type={}:cap={}:eq={}".format(
            self.room_type.value if self.room_type else "*",
            self.min_capacity if self.min_capacity is not None else "*",
            ",".join(parse_equipment(self.equipment)) or "*",
        )


class AvailabilityResolver:
    """
    Resolve room availability against the active booking set.

    Parameters
    ----------
    db : Session
        Session used for all reads; no writes are issued.
    """

    def __init__(self, db: Session):
        self.rooms = RoomRepository(db)
        self.bookings = BookingRepository(db)

    def find_conflicting(self, room: Room, start: datetime, end: datetime) -> List[Booking]:
        """Active bookings of ``room`` overlapping ``[start, end)``, by start time."""
        candidates = self.bookings.find_active_overlapping(start, end, room_id=room.id)
        return [b for b in candidates if overlaps(b.start_time, b.end_time, start, end)]

    def is_available(self, room: Room, start: datetime, end: datetime) -> bool:
        """
        Return True iff no active booking of ``room`` overlaps ``[start, end)``.

        The caller guarantees ``start < end``.
        """
        return not self.find_conflicting(room, start, end)

    def find_available(
        self,
        start: datetime,
        end: datetime,
        filters: Optional[RoomFilters] = None,
        requester_is_vip_eligible: bool = False,
    ) -> List[Room]:
        """
        List active rooms that match ``filters`` and are free for ``[start, end)``.

        VIP rooms are left out unless the requester is VIP-eligible. The
        result is ordered by room id.
        """
        filters = filters or RoomFilters()
        if filters.room_type == RoomType.VIP and not requester_is_vip_eligible:
            return []

        rooms = self.rooms.list_active(
            room_type=filters.room_type,
            min_capacity=filters.min_capacity,
        )
        required = set(parse_equipment(filters.equipment))
        busy = self.bookings.find_busy_room_ids(start, end)
        return [
            room
            for room in rooms
            if room.id not in busy
            and (requester_is_vip_eligible or not room.is_vip)
            and required.issubset(room.equipment_tags)
        ]
