from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import BookingStatus, RoomType, UserRole


class BookingBase(BaseModel):
    """
    Base schema for booking time and room information.

    Shared fields used across booking create and read operations.
    """
    room_id: int = Field(..., ge=1)
    start_time: datetime = Field(...)
    end_time: datetime = Field(...)
    participants_count: int = Field(default=1, ge=1)


class BookingCreate(BookingBase):
    """
    Schema for creating a new booking.

    Range and capacity rules are enforced by the booking service so that
    every violation maps to its own error kind.
    """
    pass


class BookingRead(BookingBase):
    """
    Schema returned when reading booking information.

    Times are naive UTC.
    """
    id: int
    user_id: int
    status: BookingStatus
    created_at: datetime
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BookingStatsRead(BaseModel):
    total: int
    active: int
    cancelled: int
    completed: int

    model_config = ConfigDict(from_attributes=True)


class SweepResult(BaseModel):
    completed: int


class AvailabilityRead(BaseModel):
    room_id: int
    start_time: datetime
    end_time: datetime
    available: bool


class RoomBase(BaseModel):
    """
    Base schema for room information.

    Shared fields used when creating and reading rooms.
    """
    name: str = Field(..., min_length=2, max_length=100)
    capacity: int = Field(..., ge=1)
    equipment: List[str] = Field(default_factory=list)
    room_type: RoomType = RoomType.REGULAR


class RoomCreate(RoomBase):
    pass


class RoomUpdate(BaseModel):
    """
    Schema for partial updates to a room.

    All fields are optional and only provided values will be updated.
    """
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    capacity: Optional[int] = Field(default=None, ge=1)
    equipment: Optional[List[str]] = None
    room_type: Optional[RoomType] = None


class RoomRead(RoomBase):
    """
    Schema returned when reading room data.

    ``equipment`` is read from the room's normalized tag list.
    """
    id: int
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="before")
    @classmethod
    def _equipment_from_tags(cls, data):
        tags = getattr(data, "equipment_tags", None)
        if tags is None:
            return data
        return {
            "id": data.id,
            "name": data.name,
            "capacity": data.capacity,
            "equipment": tags,
            "room_type": data.room_type,
            "is_active": data.is_active,
            "created_at": data.created_at,
        }


class RoomStatsRead(BaseModel):
    total: int
    active: int
    regular: int
    vip: int

    model_config = ConfigDict(from_attributes=True)


class RoomDeleteResult(BaseModel):
    room_id: int
    soft_deleted: bool


class UserSync(BaseModel):
    """
    User details pushed by the identity service.

    The user id is taken from the path, so it always matches the id carried
    in that user's access tokens.
    """
    username: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255)
    role: UserRole = UserRole.USER
    is_enabled: bool = True


class UserRead(UserSync):
    id: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
