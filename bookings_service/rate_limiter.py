# bookings_service/rate_limiter.py
import threading
import time
from typing import Dict, List

from fastapi import Depends, HTTPException, status

from .auth import get_current_requester
from .config import get_settings
from .models import Requester

WINDOW_SECONDS = 60


class BookingRateLimiter:
    """
    Sliding-window limit on booking mutations per authenticated user.

    State is per process; each server instance enforces its own window.
    """

    def __init__(self, max_per_window: int, window_seconds: int = WINDOW_SECONDS):
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self._user_request_log: Dict[int, List[float]] = {}
        self._lock = threading.Lock()

    def hit(self, user_id: int) -> bool:
        """Record one request; return False if the user is over the limit."""
        now = time.monotonic()
        window_start = now - self.window_seconds
        with self._lock:
            timestamps = [ts for ts in self._user_request_log.get(user_id, []) if ts >= window_start]
            if len(timestamps) >= self.max_per_window:
                self._user_request_log[user_id] = timestamps
                return False
            timestamps.append(now)
            self._user_request_log[user_id] = timestamps
            return True

    def reset(self) -> None:
        with self._lock:
            self._user_request_log.clear()


limiter = BookingRateLimiter(max_per_window=get_settings().booking_rate_limit_per_minute)


def booking_rate_limiter(requester: Requester = Depends(get_current_requester)) -> None:
    """
    Rate limit booking-related actions per authenticated user.
    """
    if not limiter.hit(requester.user_id):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many booking operations in a short time",
        )
