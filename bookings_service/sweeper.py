"""Completion of past-due bookings, and the background thread that runs it."""

import threading
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from . import lifecycle
from .availability import invalidate_availability_cache
from .config import Settings, get_settings
from .database import SessionLocal, run_in_transaction
from .intervals import to_utc_naive, utc_now
from .logger import get_logger
from .models import BookingStatus
from .repository import BookingRepository

logger = get_logger(__name__)


def sweep_expired_bookings(db: Session, now: Optional[datetime] = None, retries: int = 3) -> int:
    """
    Complete every active booking whose end time lies before ``now``.

    Each booking is moved with a compare-and-set on its status, so bookings
    cancelled or completed concurrently are skipped rather than overwritten.
    Running the sweep again without new expired bookings returns 0.

    Parameters
    ----------
    db : Session
        Session for the sweep transaction.
    now : Optional[datetime]
        Reference time; defaults to the current UTC time.
    retries : int
        Attempts allowed for transient lock failures.

    Returns
    -------
    int
        Number of bookings transitioned to completed by this call.
    """
    now = to_utc_naive(now) if now is not None else utc_now()
    bookings = BookingRepository(db)

    def operation():
        completed = 0
        for booking in bookings.find_active_expired(now):
            if not lifecycle.can_complete(booking, now):
                continue
            if bookings.transition_status(booking.id, BookingStatus.ACTIVE, BookingStatus.COMPLETED):
                completed += 1
        return completed

    completed = run_in_transaction(db, operation, retries=retries)
    if completed:
        logger.info("Sweep completed %d expired booking(s)", completed)
        invalidate_availability_cache()
    return completed


class ExpirySweeper:
    """
    Daemon thread calling :func:`sweep_expired_bookings` at a fixed interval.

    Parameters
    ----------
    interval_seconds : float
        Pause between two sweeps.
    session_factory : Callable[[], Session]
        Creates a fresh session for every sweep.
    settings : Optional[Settings]
        Supplies the retry budget.
    """

    def __init__(
        self,
        interval_seconds: float,
        session_factory: Callable[[], Session] = SessionLocal,
        settings: Optional[Settings] = None,
    ):
        self.interval_seconds = interval_seconds
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        db = self.session_factory()
        try:
            return sweep_expired_bookings(db, retries=self.settings.transaction_retries)
        finally:
            db.close()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Expiry sweep failed; retrying at next interval")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info("Expiry sweeper started (every %ss)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
