from datetime import timedelta

import pytest

from bookings_service.availability import AvailabilityResolver, RoomFilters
from bookings_service.errors import Forbidden, InvalidRange, NotFound
from bookings_service.models import BookingStatus, RoomType, UserRole
from bookings_service.service import BookingService

from conftest import at, fixed_clock, requester


@pytest.fixture
def service(db):
    return BookingService(db, clock=fixed_clock())


@pytest.fixture
def owner(create_user):
    return create_user("owner")


def test_room_with_no_bookings_is_available(service, create_room):
    room_id = create_room("Room A")
    assert service.check_availability(room_id, at(10), at(11))


def test_overlapping_active_booking_blocks_room(service, create_room, insert_booking, owner):
    room_id = create_room("Room A")
    insert_booking(owner, room_id, at(10), at(11))
    assert not service.check_availability(room_id, at(10, 30), at(11, 30))
    assert not service.check_availability(room_id, at(9), at(12))


def test_touching_intervals_are_available(service, create_room, insert_booking, owner):
    room_id = create_room("Room A")
    insert_booking(owner, room_id, at(10), at(11))
    assert service.check_availability(room_id, at(11), at(12))
    assert service.check_availability(room_id, at(9), at(10))


def test_cancelled_and_completed_bookings_do_not_block(service, create_room, insert_booking, owner):
    room_id = create_room("Room A")
    insert_booking(owner, room_id, at(10), at(11), status=BookingStatus.CANCELLED)
    insert_booking(owner, room_id, at(10), at(11), status=BookingStatus.COMPLETED)
    assert service.check_availability(room_id, at(10), at(11))


def test_check_availability_rejects_bad_range(service, create_room):
    room_id = create_room("Room A")
    with pytest.raises(InvalidRange):
        service.check_availability(room_id, at(11), at(10))
    with pytest.raises(InvalidRange):
        service.check_availability(room_id, at(10), at(10))


def test_check_availability_unknown_room(service):
    with pytest.raises(NotFound):
        service.check_availability(999, at(10), at(11))


def test_find_conflicting_lists_overlaps_for_admin(service, create_room, insert_booking, owner):
    room_id = create_room("Room A")
    first = insert_booking(owner, room_id, at(10), at(11))
    insert_booking(owner, room_id, at(12), at(13))
    conflicts = service.find_conflicting_bookings(requester(1, UserRole.ADMIN), room_id, at(10, 30), at(11, 30))
    assert [b.id for b in conflicts] == [first]


def test_find_conflicting_requires_admin(service, create_room):
    room_id = create_room("Room A")
    with pytest.raises(Forbidden):
        service.find_conflicting_bookings(requester(1), room_id, at(10), at(11))


def test_available_rooms_exclude_busy_and_inactive(service, create_room, insert_booking, owner):
    free = create_room("Free")
    busy = create_room("Busy")
    create_room("Closed", is_active=False)
    insert_booking(owner, busy, at(10), at(11))

    rooms = service.find_available_rooms(requester(owner), at(10), at(11))
    assert [r.id for r in rooms] == [free]


def test_available_rooms_are_ordered_by_id(service, create_room):
    ids = [create_room(f"Room {n}") for n in range(3)]
    rooms = service.find_available_rooms(requester(1), at(10), at(11))
    assert [r.id for r in rooms] == ids


def test_vip_rooms_hidden_from_regular_users(service, create_room):
    regular = create_room("Regular")
    vip = create_room("Board", room_type=RoomType.VIP)

    assert [r.id for r in service.find_available_rooms(requester(1), at(10), at(11))] == [regular]
    assert [
        r.id for r in service.find_available_rooms(requester(1, UserRole.VIP_USER), at(10), at(11))
    ] == [regular, vip]


def test_vip_filter_for_regular_user_is_empty(service, create_room):
    create_room("Board", room_type=RoomType.VIP)
    rooms = service.find_available_rooms(requester(1), at(10), at(11), RoomFilters(room_type=RoomType.VIP))
    assert rooms == []


def test_capacity_and_equipment_filters(service, create_room):
    create_room("Small", capacity=2, equipment=["projector"])
    big_plain = create_room("Big plain", capacity=10)
    big_av = create_room("Big AV", capacity=10, equipment=["Projector", "whiteboard"])

    filters = RoomFilters(min_capacity=8)
    assert [r.id for r in service.find_available_rooms(requester(1), at(10), at(11), filters)] == [big_plain, big_av]

    filters = RoomFilters(min_capacity=8, equipment=["projector"])
    assert [r.id for r in service.find_available_rooms(requester(1), at(10), at(11), filters)] == [big_av]


def test_resolver_is_available_matches_conflicts(db, create_room, insert_booking, owner):
    room_id = create_room("Room A")
    insert_booking(owner, room_id, at(10), at(11))
    resolver = AvailabilityResolver(db)
    room = resolver.rooms.get(room_id)
    try:
        assert not resolver.is_available(room, at(10), at(10, 1))
        assert resolver.is_available(room, at(11), at(11) + timedelta(minutes=1))
    finally:
        db.commit()


def test_cache_fingerprint_normalizes_equipment():
    a = RoomFilters(equipment=["Projector", "whiteboard"])
    b = RoomFilters(equipment=["whiteboard", "projector "])
    assert a.cache_fingerprint() == b.cache_fingerprint()
    assert RoomFilters().cache_fingerprint() == "type=*:cap=*:eq=*"
