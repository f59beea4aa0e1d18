"""
Fire-and-forget booking notifications.

The booking service hands immutable snapshots to a ``NotificationDispatcher``
after its transaction commits. Delivery runs on a small thread pool; every
failure is logged and swallowed so it can never affect the booking itself.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from .circuit_breaker import CircuitBreaker
from .config import Settings, get_settings
from .logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Recipient:
    user_id: int
    username: str
    email: str


@dataclass(frozen=True)
class RoomRef:
    room_id: int
    name: str


class NotificationUnavailable(Exception):
    """Raised when the notification endpoint cannot be reached."""


class Notifier:
    """Interface for notification backends."""

    def notify_booking_created(self, user: Recipient, room: RoomRef, start: datetime, end: datetime) -> None:
        raise NotImplementedError

    def notify_booking_cancelled(self, user: Recipient, room: RoomRef, start: datetime, end: datetime) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Used when no notification endpoint is configured."""

    def notify_booking_created(self, user, room, start, end):
        logger.info(
            "Booking confirmation for %s <%s>: %s %s - %s",
            user.username, user.email, room.name, start.isoformat(), end.isoformat(),
        )

    def notify_booking_cancelled(self, user, room, start, end):
        logger.info(
            "Booking cancellation for %s <%s>: %s %s - %s",
            user.username, user.email, room.name, start.isoformat(), end.isoformat(),
        )


class HttpNotifier(Notifier):
    """
    Post booking events to an external notification service.

    Parameters
    ----------
    url : str
        Endpoint receiving ``POST`` requests with a JSON event body.
    timeout : float
        Per-request timeout in seconds.
    breaker : Optional[CircuitBreaker]
        Circuit breaker shared by all deliveries.
    """

    def __init__(self, url: str, timeout: float = 5.0, breaker: Optional[CircuitBreaker] = None):
        self.url = url
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(name="notification_service")

    def _post(self, event: str, user: Recipient, room: RoomRef, start: datetime, end: datetime) -> None:
        if not self.breaker.allow_request():
            raise NotificationUnavailable("Notification service temporarily unavailable (circuit open)")

        payload = {
            "event": event,
            "user_id": user.user_id,
            "username": user.username,
            "email": user.email,
            "room_id": room.room_id,
            "room_name": room.name,
            "start_time": start.isoformat(),
            "end_time": end.isoformat(),
        }
        try:
            resp = httpx.post(self.url, json=payload, timeout=self.timeout)
        except httpx.RequestError as exc:
            self.breaker.record_failure()
            raise NotificationUnavailable("Failed to contact notification service") from exc

        if resp.status_code >= 400:
            self.breaker.record_failure()
            raise NotificationUnavailable(
                f"Notification service returned HTTP {resp.status_code}"
            )
        self.breaker.record_success()

    def notify_booking_created(self, user, room, start, end):
        self._post("booking.created", user, room, start, end)

    def notify_booking_cancelled(self, user, room, start, end):
        self._post("booking.cancelled", user, room, start, end)


class NotificationDispatcher:
    """
    Run notifier calls in the background and absorb their failures.

    Parameters
    ----------
    notifier : Notifier
        Backend performing the actual delivery.
    max_workers : int
        Size of the delivery thread pool.
    """

    def __init__(self, notifier: Notifier, max_workers: int = 2):
        self.notifier = notifier
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="booking-notify"
        )

    def _deliver(self, event: str, method, *args) -> None:
        try:
            method(*args)
        except Exception:
            logger.warning("Notification %s failed", event, exc_info=True)

    def _submit(self, event: str, method, *args) -> None:
        try:
            self._executor.submit(self._deliver, event, method, *args)
        except RuntimeError:
            # pool already shut down
            logger.warning("Notification %s dropped: dispatcher is closed", event)

    def booking_created(self, user: Recipient, room: RoomRef, start: datetime, end: datetime) -> None:
        self._submit("booking.created", self.notifier.notify_booking_created, user, room, start, end)

    def booking_cancelled(self, user: Recipient, room: RoomRef, start: datetime, end: datetime) -> None:
        self._submit("booking.cancelled", self.notifier.notify_booking_cancelled, user, room, start, end)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def build_dispatcher(settings: Optional[Settings] = None) -> NotificationDispatcher:
    settings = settings or get_settings()
    if settings.notification_url:
        notifier: Notifier = HttpNotifier(
            settings.notification_url,
            timeout=settings.notification_timeout_seconds,
        )
    else:
        notifier = LoggingNotifier()
    return NotificationDispatcher(notifier, max_workers=settings.notification_workers)
