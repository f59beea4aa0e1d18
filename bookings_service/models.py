from dataclasses import dataclass
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
)

from .database import Base
from .intervals import utc_now


class BookingStatus(str, PyEnum):
    """
    Enumeration of possible booking statuses.

    Values
    ------
    active
        Booking holds the room for its time range.
    cancelled
        Booking was cancelled by its owner or an admin (terminal).
    completed
        Booking's end time has passed (terminal).
    """
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED})


class RoomType(str, PyEnum):
    """Room category; VIP rooms are reserved for VIP-eligible users."""
    REGULAR = "regular"
    VIP = "vip"


class UserRole(str, PyEnum):
    """
    Roles known to the booking engine.

    Roles
    -----
    user
        Regular user; may book regular rooms.
    vip_user
        May additionally book VIP rooms.
    admin
        Full access, including other users' bookings and room administration.
    """
    USER = "user"
    VIP_USER = "vip_user"
    ADMIN = "admin"


VIP_ELIGIBLE_ROLES = frozenset({UserRole.VIP_USER, UserRole.ADMIN})


def parse_equipment(raw):
    """Normalize equipment tags into a sorted, de-duplicated list."""
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    return sorted({tag.strip().lower() for tag in raw if tag and tag.strip()})


class User(Base):
    """
    Booking-side projection of an application user.

    Rows are pushed by the identity service (or an admin) through
    ``PUT /api/v1/users/{id}``; bookings require the row to exist.

    Attributes
    ----------
    id : int
        Primary key (same identifier as carried in access tokens).
    username : str
        Unique login name.
    email : str
        Address used for booking notifications.
    role : UserRole
        Role controlling booking entitlements.
    is_enabled : bool
        False until the email is verified, or when the user is blocked.
    created_at : datetime
        Timestamp of user creation.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, index=True, nullable=False)
    email = Column(String(255), nullable=False)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.USER)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now)

    @property
    def is_vip_eligible(self) -> bool:
        return self.role in VIP_ELIGIBLE_ROLES


class Room(Base):
    """
    SQLAlchemy model representing a meeting room.

    Attributes
    ----------
    id : int
        Primary key.
    name : str
        Human-readable, unique room name (e.g. 'Conference Room A').
    capacity : int
        Maximum number of participants; always at least 1.
    equipment : str
        Comma-separated, lower-cased equipment tags (see ``equipment_tags``).
    room_type : RoomType
        Regular or VIP.
    is_active : bool
        Soft-delete flag; inactive rooms cannot be booked.
    created_at : datetime
        Timestamp recording when the room was created.
    """
    __tablename__ = "rooms"
    __table_args__ = (CheckConstraint("capacity >= 1", name="ck_rooms_capacity_positive"),)

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    capacity = Column(Integer, nullable=False)
    equipment = Column(String(500), nullable=False, default="")
    room_type = Column(Enum(RoomType), nullable=False, default=RoomType.REGULAR)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now)

    @property
    def equipment_tags(self):
        return parse_equipment(self.equipment)

    @equipment_tags.setter
    def equipment_tags(self, tags):
        self.equipment = ",".join(parse_equipment(tags))

    @property
    def is_vip(self) -> bool:
        return self.room_type == RoomType.VIP


class Booking(Base):
    """
    SQLAlchemy model representing a room booking.

    Attributes
    ----------
    id : int
        Primary key.
    user_id : int
        Owner of the booking.
    room_id : int
        Booked room.
    start_time : datetime
        Start of the reserved half-open interval (naive UTC).
    end_time : datetime
        End of the reserved interval (naive UTC), strictly after start_time.
    participants_count : int
        Number of attendees, between 1 and the room capacity at creation.
    status : BookingStatus
        Current lifecycle state.
    created_at : datetime
        Timestamp when the booking was created.
    cancelled_at : datetime
        Set exactly when status is cancelled.
    """
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_bookings_valid_range"),
        CheckConstraint("participants_count >= 1", name="ck_bookings_participants_positive"),
        Index("ix_bookings_room_status_start", "room_id", "status", "start_time"),
        Index("ix_bookings_user_status_start", "user_id", "status", "start_time"),
        Index("ix_bookings_status_end", "status", "end_time"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    participants_count = Column(Integer, nullable=False, default=1)
    status = Column(Enum(BookingStatus), nullable=False, default=BookingStatus.ACTIVE)
    created_at = Column(DateTime, default=utc_now)
    cancelled_at = Column(DateTime, nullable=True)


@dataclass(frozen=True)
class Requester:
    """Authenticated caller as supplied by the identity layer."""

    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_vip_eligible(self) -> bool:
        return self.role in VIP_ELIGIBLE_ROLES
