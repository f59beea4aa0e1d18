"""
Caller-facing error kinds raised by the booking engine.

Each kind carries a stable ``code`` and the HTTP status the API layer maps
it to. Only ``InternalFailure`` stands for unexpected problems; its message
never includes storage details.
"""

from typing import Any, Dict, Optional

from fastapi import status


class BookingError(Exception):
    """Base class for all booking engine errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.__class__.__name__


class NotFound(BookingError):
    """Referenced room, user or booking does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


class InactiveResource(BookingError):
    """Room has been soft-deleted."""

    status_code = status.HTTP_409_CONFLICT


class Forbidden(BookingError):
    """Requester lacks the role or ownership for the action."""

    status_code = status.HTTP_403_FORBIDDEN


class InvalidRange(BookingError):
    """Malformed time range, start not in the future, or bad participant count."""

    status_code = status.HTTP_400_BAD_REQUEST


class CapacityExceeded(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST


class Conflict(BookingError):
    """An overlapping active booking exists for the room or the user."""

    status_code = status.HTTP_409_CONFLICT


class TooLateToCancel(BookingError):
    status_code = status.HTTP_409_CONFLICT


class AlreadyFinalized(BookingError):
    """Booking is cancelled or completed and accepts no further transitions."""

    status_code = status.HTTP_409_CONFLICT


class InternalFailure(BookingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)
