from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from common.cache import get_cached_json, make_key, set_cached_json

from . import schemas
from .auth import get_current_requester, require_roles
from .availability import AVAILABILITY_CACHE_PREFIX, RoomFilters, invalidate_availability_cache
from .config import get_settings
from .database import Base, engine, get_db
from .errors import BookingError
from .intervals import to_utc_naive
from .logger import get_logger
from .models import BookingStatus, Requester, RoomType, UserRole
from .notifications import NotificationDispatcher, build_dispatcher
from .rate_limiter import booking_rate_limiter
from .rooms import RoomService
from .service import BookingService
from .users import UserDirectory
from .sweeper import ExpirySweeper, sweep_expired_bookings

logger = get_logger(__name__)

SERVICE_NAME = "bookings"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    Base.metadata.create_all(bind=engine)
    if getattr(app.state, "dispatcher", None) is None:
        app.state.dispatcher = build_dispatcher(settings)

    sweeper = None
    if settings.sweeper_enabled:
        sweeper = ExpirySweeper(settings.sweep_interval_seconds, settings=settings)
        sweeper.start()
    logger.info("Bookings service started")
    yield
    if sweeper is not None:
        sweeper.stop()
    app.state.dispatcher.shutdown(wait=False)


app = FastAPI(title="Bookings Service", version="1.0.0", lifespan=lifespan)
router_v1 = APIRouter(prefix="/api/v1")

admin_only = require_roles(UserRole.ADMIN)


def _error_body(request: Request, status_code: int, detail, code: Optional[str] = None) -> dict:
    body = {
        "service": SERVICE_NAME,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "detail": detail,
    }
    if code is not None:
        body["code"] = code
    return body


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.message, exc.code),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body(request, 500, "Internal server error"),
    )


@app.get("/")
def root():
    """
    Health-check endpoint for the Bookings service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": SERVICE_NAME, "status": "running"}


# ---------- Dependencies ----------


def get_dispatcher(request: Request) -> NotificationDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = build_dispatcher(get_settings())
        request.app.state.dispatcher = dispatcher
    return dispatcher


def get_booking_service(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> BookingService:
    return BookingService(db, dispatcher=dispatcher)


def get_room_service(db: Session = Depends(get_db)) -> RoomService:
    return RoomService(db)


def get_user_directory(db: Session = Depends(get_db)) -> UserDirectory:
    return UserDirectory(db)


# ---------- Room availability ----------


@router_v1.get("/rooms/available", response_model=List[schemas.RoomRead])
def list_available_rooms(
    start_time: datetime,
    end_time: datetime,
    room_type: Optional[RoomType] = None,
    min_capacity: Optional[int] = Query(default=None, ge=1),
    equipment: List[str] = Query(default=[]),
    service: BookingService = Depends(get_booking_service),
    requester: Requester = Depends(get_current_requester),
):
    """
    List active rooms that are free for the whole requested interval.

    Behavior
    --------
    - VIP rooms are only listed for vip_user and admin callers.
    - Optional filters: room type, minimum capacity, required equipment tags.
    - Results are ordered by room id and cached briefly; any booking or room
      change clears the cache.

    Parameters
    ----------
    start_time : datetime
        Start of the desired interval (ISO 8601).
    end_time : datetime
        End of the desired interval (ISO 8601).
    room_type : Optional[RoomType]
        Restrict to regular or vip rooms.
    min_capacity : Optional[int]
        Minimum room capacity.
    equipment : List[str]
        Tags every returned room must have.

    Returns
    -------
    List[RoomRead]
        Matching free rooms.
    """
    filters = RoomFilters(room_type=room_type, min_capacity=min_capacity, equipment=equipment)
    settings = get_settings()
    cache_key = make_key(
        AVAILABILITY_CACHE_PREFIX.rstrip(":"),
        filters.cache_fingerprint(),
        to_utc_naive(start_time).isoformat(),
        to_utc_naive(end_time).isoformat(),
        "vip" if requester.is_vip_eligible else "std",
    )
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    rooms = service.find_available_rooms(requester, start_time, end_time, filters)
    data = [schemas.RoomRead.model_validate(r).model_dump(mode="json") for r in rooms]
    set_cached_json(cache_key, data, ttl_seconds=settings.availability_cache_ttl_seconds)
    return data


@router_v1.get("/rooms/stats", response_model=schemas.RoomStatsRead)
def room_statistics(
    rooms: RoomService = Depends(get_room_service),
    requester: Requester = Depends(admin_only),
):
    return rooms.room_statistics(requester)


@router_v1.get("/rooms/{room_id}/availability", response_model=schemas.AvailabilityRead)
def check_availability(
    room_id: int,
    start_time: datetime,
    end_time: datetime,
    service: BookingService = Depends(get_booking_service),
    _: Requester = Depends(get_current_requester),
):
    """
    Check if a room is free during a given time range.

    Raises
    ------
    InvalidRange
        If end_time is not after start_time.
    NotFound
        If the room does not exist.
    """
    available = service.check_availability(room_id, start_time, end_time)
    return {
        "room_id": room_id,
        "start_time": to_utc_naive(start_time),
        "end_time": to_utc_naive(end_time),
        "available": available,
    }


@router_v1.get("/rooms/{room_id}/conflicts", response_model=List[schemas.BookingRead])
def list_room_conflicts(
    room_id: int,
    start_time: datetime,
    end_time: datetime,
    service: BookingService = Depends(get_booking_service),
    requester: Requester = Depends(admin_only),
):
    """Admin: active bookings of a room that overlap the given interval."""
    return service.find_conflicting_bookings(requester, room_id, start_time, end_time)


# ---------- Room browsing ----------


@router_v1.get("/rooms", response_model=List[schemas.RoomRead])
def list_rooms(
    room_type: Optional[RoomType] = None,
    search: Optional[str] = Query(default=None, max_length=100),
    min_capacity: Optional[int] = Query(default=None, ge=1),
    rooms: RoomService = Depends(get_room_service),
    requester: Requester = Depends(get_current_requester),
):
    """
    List active rooms, regardless of their bookings.

    Parameters
    ----------
    room_type : Optional[RoomType]
        Restrict to regular or vip rooms; vip yields nothing for callers
        who are not VIP-eligible.
    search : Optional[str]
        Case-insensitive substring of the room name.
    min_capacity : Optional[int]
        Minimum room capacity.

    Returns
    -------
    List[RoomRead]
        Matching rooms ordered by id.
    """
    return rooms.list_rooms(requester, room_type=room_type, search=search, min_capacity=min_capacity)


# ---------- Room administration (admin) ----------


@router_v1.post("/rooms", response_model=schemas.RoomRead, status_code=status.HTTP_201_CREATED)
def create_room(
    room_in: schemas.RoomCreate,
    rooms: RoomService = Depends(get_room_service),
    requester: Requester = Depends(admin_only),
):
    room = rooms.create_room(
        requester,
        name=room_in.name,
        capacity=room_in.capacity,
        room_type=room_in.room_type,
        equipment=room_in.equipment,
    )
    invalidate_availability_cache()
    return room


@router_v1.get("/rooms/{room_id}", response_model=schemas.RoomRead)
def get_room(
    room_id: int,
    rooms: RoomService = Depends(get_room_service),
    requester: Requester = Depends(get_current_requester),
):
    """
    Retrieve a single room.

    Inactive rooms and, for callers who are not VIP-eligible, VIP rooms are
    reported as missing unless the caller is an admin.
    """
    room = rooms.get_room(room_id)
    if not requester.is_admin and (not room.is_active or (room.is_vip and not requester.is_vip_eligible)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return room


@router_v1.put("/rooms/{room_id}", response_model=schemas.RoomRead)
def update_room(
    room_id: int,
    update_data: schemas.RoomUpdate,
    rooms: RoomService = Depends(get_room_service),
    requester: Requester = Depends(admin_only),
):
    room = rooms.update_room(
        requester,
        room_id,
        name=update_data.name,
        capacity=update_data.capacity,
        room_type=update_data.room_type,
        equipment=update_data.equipment,
    )
    invalidate_availability_cache()
    return room


@router_v1.delete("/rooms/{room_id}", response_model=schemas.RoomDeleteResult)
def delete_room(
    room_id: int,
    rooms: RoomService = Depends(get_room_service),
    requester: Requester = Depends(admin_only),
):
    """
    Delete a room.

    Behavior
    --------
    - Rooms with active bookings cannot be deleted (409).
    - Rooms with any booking history are deactivated instead of removed.
    """
    soft_deleted = rooms.delete_room(requester, room_id)
    invalidate_availability_cache()
    return {"room_id": room_id, "soft_deleted": soft_deleted}


@router_v1.post("/rooms/{room_id}/restore", response_model=schemas.RoomRead)
def restore_room(
    room_id: int,
    rooms: RoomService = Depends(get_room_service),
    requester: Requester = Depends(admin_only),
):
    room = rooms.restore_room(requester, room_id)
    invalidate_availability_cache()
    return room


# ---------- User directory ----------


@router_v1.put("/users/{user_id}", response_model=schemas.UserRead)
def sync_user(
    user_id: int,
    user_in: schemas.UserSync,
    response: Response,
    users: UserDirectory = Depends(get_user_directory),
    requester: Requester = Depends(admin_only),
):
    """
    Create or update the booking-side record of a user.

    Called by the identity service (with an admin token) whenever an account
    is created, changes role, or is enabled or blocked. Returns 201 when the
    user was created and 200 when it was updated.
    """
    user, created = users.upsert_user(
        requester,
        user_id,
        username=user_in.username,
        email=user_in.email,
        role=user_in.role,
        is_enabled=user_in.is_enabled,
    )
    if created:
        response.status_code = status.HTTP_201_CREATED
    return user


@router_v1.get("/users/{user_id}", response_model=schemas.UserRead)
def get_user(
    user_id: int,
    users: UserDirectory = Depends(get_user_directory),
    requester: Requester = Depends(get_current_requester),
):
    return users.get_user(requester, user_id)


# ---------- Create booking ----------


@router_v1.post(
    "/bookings",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_rate_limiter)],
)
def create_booking(
    booking_in: schemas.BookingCreate,
    service: BookingService = Depends(get_booking_service),
    requester: Requester = Depends(get_current_requester),
):
    """
    Create a new booking for the authenticated user.

    Behavior
    --------
    - The caller (from the JWT) becomes the owner.
    - VIP rooms require the vip_user or admin role.
    - Rejects past or malformed ranges, over-capacity requests, and
      intervals overlapping an active booking of the room or of the caller.

    Returns
    -------
    BookingRead
        The newly created booking.
    """
    booking = service.create_booking(
        requester,
        room_id=booking_in.room_id,
        start=booking_in.start_time,
        end=booking_in.end_time,
        participants_count=booking_in.participants_count,
    )
    invalidate_availability_cache()
    return booking


# ---------- My bookings (current user) ----------


@router_v1.get("/bookings/me", response_model=List[schemas.BookingRead])
def list_my_bookings(
    active_only: bool = False,
    service: BookingService = Depends(get_booking_service),
    requester: Requester = Depends(get_current_requester),
):
    """List the caller's bookings, newest start first."""
    return service.list_user_bookings(requester, active_only=active_only)


# ---------- Admin: statistics, sweep, list all ----------


@router_v1.get("/bookings/stats", response_model=schemas.BookingStatsRead)
def booking_statistics(
    service: BookingService = Depends(get_booking_service),
    requester: Requester = Depends(admin_only),
):
    return service.booking_statistics(requester)


@router_v1.post("/bookings/sweep", response_model=schemas.SweepResult)
def run_sweep(
    db: Session = Depends(get_db),
    _: Requester = Depends(admin_only),
):
    """Admin: complete past-due bookings now instead of waiting for the sweeper."""
    completed = sweep_expired_bookings(db, retries=get_settings().transaction_retries)
    return {"completed": completed}


@router_v1.get("/bookings", response_model=List[schemas.BookingRead])
def list_all_bookings(
    booking_status: Optional[BookingStatus] = Query(default=None, alias="status"),
    room_id: Optional[int] = Query(default=None, ge=1),
    user_id: Optional[int] = Query(default=None, ge=1),
    starts_from: Optional[datetime] = None,
    starts_before: Optional[datetime] = None,
    service: BookingService = Depends(get_booking_service),
    requester: Requester = Depends(admin_only),
):
    """
    Admin: view all bookings with optional filters.

    Parameters
    ----------
    booking_status : Optional[BookingStatus]
        Only bookings in this status (query name ``status``).
    room_id : Optional[int]
        Only bookings of this room.
    user_id : Optional[int]
        Only bookings of this user.
    starts_from, starts_before : Optional[datetime]
        Only bookings starting in ``[starts_from, starts_before)``.

    Returns
    -------
    List[BookingRead]
        Matching bookings ordered by start_time descending.
    """
    return service.list_bookings(
        requester,
        status=booking_status,
        room_id=room_id,
        user_id=user_id,
        starts_from=starts_from,
        starts_before=starts_before,
    )


# ---------- Single booking ----------


@router_v1.get("/bookings/{booking_id}", response_model=schemas.BookingRead)
def get_booking(
    booking_id: int,
    service: BookingService = Depends(get_booking_service),
    requester: Requester = Depends(get_current_requester),
):
    return service.get_booking(requester, booking_id)


@router_v1.post(
    "/bookings/{booking_id}/cancel",
    response_model=schemas.BookingRead,
    dependencies=[Depends(booking_rate_limiter)],
)
def cancel_booking(
    booking_id: int,
    service: BookingService = Depends(get_booking_service),
    requester: Requester = Depends(get_current_requester),
):
    """
    Cancel a booking.

    Access
    ------
    - Owner of the booking.
    - Admin for any booking.

    Raises
    ------
    TooLateToCancel
        Within the cancellation window before the start (409).
    AlreadyFinalized
        Booking already cancelled or completed (409).
    """
    booking = service.cancel_booking(requester, booking_id)
    invalidate_availability_cache()
    return booking


app.include_router(router_v1)
