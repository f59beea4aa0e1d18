import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Must be set before bookings_service is imported: settings are read once.
_DB_DIR = tempfile.mkdtemp(prefix="bookings-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_DB_DIR, "bookings.db")
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["BOOKING_RATE_LIMIT_PER_MINUTE"] = "1000"
os.environ.pop("REDIS_URL", None)
os.environ.pop("NOTIFICATION_URL", None)

import pytest
from jose import jwt

from bookings_service.database import Base, SessionLocal, engine
from bookings_service.models import Booking, BookingStatus, Requester, Room, RoomType, User, UserRole
from bookings_service.rate_limiter import limiter

SECRET_KEY = "super-secret-smart-meeting-room-key"
ALGORITHM = "HS256"

# Fixed reference time for service-level tests (naive UTC).
NOW = datetime(2030, 1, 7, 8, 0, 0)


def at(hour: int, minute: int = 0, days: int = 0) -> datetime:
    """A time on the day of NOW (naive UTC)."""
    return NOW.replace(hour=hour, minute=minute) + timedelta(days=days)


def fixed_clock(value: datetime = NOW):
    return lambda: value


def make_token(user_id: int, username: str, role: str) -> str:
    payload = {
        "sub": username,
        "role": role,
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def auth_headers(user_id: int, username: str, role: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, username, role)}"}


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    limiter.reset()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def create_user():
    def _create(username: str, role: UserRole = UserRole.USER, is_enabled: bool = True) -> int:
        session = SessionLocal()
        try:
            user = User(
                username=username,
                email=f"{username}@example.com",
                role=role,
                is_enabled=is_enabled,
            )
            session.add(user)
            session.commit()
            return user.id
        finally:
            session.close()

    return _create


@pytest.fixture
def create_room():
    def _create(
        name: str,
        capacity: int = 4,
        room_type: RoomType = RoomType.REGULAR,
        equipment=(),
        is_active: bool = True,
    ) -> int:
        session = SessionLocal()
        try:
            room = Room(name=name, capacity=capacity, room_type=room_type, is_active=is_active)
            room.equipment_tags = equipment
            session.add(room)
            session.commit()
            return room.id
        finally:
            session.close()

    return _create


@pytest.fixture
def insert_booking():
    """Write a booking row directly, bypassing validation (e.g. for past bookings)."""

    def _insert(
        user_id: int,
        room_id: int,
        start: datetime,
        end: datetime,
        status: BookingStatus = BookingStatus.ACTIVE,
        participants_count: int = 1,
    ) -> int:
        session = SessionLocal()
        try:
            booking = Booking(
                user_id=user_id,
                room_id=room_id,
                start_time=start,
                end_time=end,
                participants_count=participants_count,
                status=status,
                cancelled_at=NOW if status == BookingStatus.CANCELLED else None,
            )
            session.add(booking)
            session.commit()
            return booking.id
        finally:
            session.close()

    return _insert


@pytest.fixture
def fetch_booking():
    def _fetch(booking_id: int):
        session = SessionLocal()
        try:
            booking = session.get(Booking, booking_id)
            session.commit()
            return booking
        finally:
            session.close()

    return _fetch


@pytest.fixture
def active_bookings():
    """All active bookings, optionally for one room or one user."""

    def _list(room_id=None, user_id=None):
        session = SessionLocal()
        try:
            query = session.query(Booking).filter(Booking.status == BookingStatus.ACTIVE)
            if room_id is not None:
                query = query.filter(Booking.room_id == room_id)
            if user_id is not None:
                query = query.filter(Booking.user_id == user_id)
            bookings = query.order_by(Booking.start_time).all()
            session.commit()
            return bookings
        finally:
            session.close()

    return _list


def requester(user_id: int, role: UserRole = UserRole.USER) -> Requester:
    return Requester(user_id=user_id, role=role)
