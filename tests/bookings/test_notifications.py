from dataclasses import replace
from datetime import timedelta

import httpx
import pytest

from bookings_service import circuit_breaker, notifications
from bookings_service.circuit_breaker import CircuitBreaker
from bookings_service.config import get_settings
from bookings_service.notifications import (
    HttpNotifier,
    LoggingNotifier,
    NotificationDispatcher,
    NotificationUnavailable,
    Notifier,
    Recipient,
    RoomRef,
    build_dispatcher,
)

from conftest import at

USER = Recipient(user_id=1, username="alice", email="alice@example.com")
ROOM = RoomRef(room_id=3, name="Room A")


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def notify_booking_created(self, user, room, start, end):
        self.events.append(("created", user.username, room.name, start, end))

    def notify_booking_cancelled(self, user, room, start, end):
        self.events.append(("cancelled", user.username, room.name, start, end))


class ExplodingNotifier(Notifier):
    def notify_booking_created(self, user, room, start, end):
        raise RuntimeError("smtp down")


def test_dispatcher_delivers_in_background():
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier)
    dispatcher.booking_created(USER, ROOM, at(10), at(11))
    dispatcher.shutdown(wait=True)
    assert notifier.events == [("created", "alice", "Room A", at(10), at(11))]


def test_dispatcher_swallows_delivery_failures():
    dispatcher = NotificationDispatcher(ExplodingNotifier())
    dispatcher.booking_created(USER, ROOM, at(10), at(11))
    dispatcher.shutdown(wait=True)


def test_dispatcher_after_shutdown_drops_event():
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier)
    dispatcher.shutdown(wait=True)
    dispatcher.booking_cancelled(USER, ROOM, at(10), at(11))
    assert notifier.events == []


def test_logging_notifier_does_not_raise():
    notifier = LoggingNotifier()
    notifier.notify_booking_created(USER, ROOM, at(10), at(11))
    notifier.notify_booking_cancelled(USER, ROOM, at(10), at(11))


def test_build_dispatcher_without_url_logs_only():
    dispatcher = build_dispatcher(replace(get_settings(), notification_url=None))
    try:
        assert isinstance(dispatcher.notifier, LoggingNotifier)
    finally:
        dispatcher.shutdown()


def test_http_notifier_posts_event(monkeypatch):
    sent = {}

    def fake_post(url, json, timeout):
        sent.update(url=url, json=json, timeout=timeout)
        return httpx.Response(202)

    monkeypatch.setattr(notifications.httpx, "post", fake_post)
    notifier = HttpNotifier("http://notify.local/events", timeout=2.0)
    notifier.notify_booking_cancelled(USER, ROOM, at(10), at(11))

    assert sent["url"] == "http://notify.local/events"
    assert sent["timeout"] == 2.0
    assert sent["json"]["event"] == "booking.cancelled"
    assert sent["json"]["email"] == "alice@example.com"
    assert sent["json"]["room_name"] == "Room A"
    assert sent["json"]["start_time"] == at(10).isoformat()


def test_http_notifier_opens_circuit_after_failures(monkeypatch):
    calls = []

    def failing_post(url, json, timeout):
        calls.append(url)
        raise httpx.ConnectError("refused")

    monkeypatch.setattr(notifications.httpx, "post", failing_post)
    notifier = HttpNotifier("http://notify.local/events", breaker=CircuitBreaker("test", max_failures=2))

    for _ in range(2):
        with pytest.raises(NotificationUnavailable):
            notifier.notify_booking_created(USER, ROOM, at(10), at(11))
    with pytest.raises(NotificationUnavailable):
        notifier.notify_booking_created(USER, ROOM, at(10), at(11))

    assert len(calls) == 2
    assert notifier.breaker.state == "open"


def test_http_error_status_counts_as_failure(monkeypatch):
    monkeypatch.setattr(notifications.httpx, "post", lambda url, json, timeout: httpx.Response(503))
    notifier = HttpNotifier("http://notify.local/events")
    with pytest.raises(NotificationUnavailable):
        notifier.notify_booking_created(USER, ROOM, at(10), at(11))
    assert notifier.breaker.failure_count == 1


def test_circuit_half_opens_after_timeout(monkeypatch):
    breaker = CircuitBreaker("test", max_failures=1, reset_timeout_seconds=30)
    clock = {"now": at(10)}
    monkeypatch.setattr(circuit_breaker, "utc_now", lambda: clock["now"])

    breaker.record_failure()
    assert breaker.state == "open"
    assert not breaker.allow_request()

    clock["now"] = at(10) + timedelta(seconds=31)
    assert breaker.allow_request()
    assert breaker.state == "half_open"
    assert not breaker.allow_request()

    breaker.record_success()
    assert breaker.state == "closed"
    assert breaker.allow_request()


def test_failed_trial_reopens_circuit(monkeypatch):
    breaker = CircuitBreaker("test", max_failures=3, reset_timeout_seconds=30)
    clock = {"now": at(10)}
    monkeypatch.setattr(circuit_breaker, "utc_now", lambda: clock["now"])

    for _ in range(3):
        breaker.record_failure()
    clock["now"] = at(10, 1)
    assert breaker.allow_request()
    breaker.record_failure()
    assert breaker.state == "open"
    assert not breaker.allow_request()
