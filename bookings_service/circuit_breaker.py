import threading
from datetime import timedelta

from .intervals import utc_now
from .logger import get_logger

logger = get_logger(__name__)


class CircuitBreaker:
    """
    In-memory circuit breaker for outbound notification calls.

    States:
    - closed: all calls pass, count consecutive failures
    - open: calls are refused immediately
    - half_open: one trial call is let through after the reset timeout

    Notification deliveries run on a thread pool, so state changes are
    guarded by a lock.
    """

    def __init__(self, name: str, max_failures: int = 3, reset_timeout_seconds: int = 30):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = timedelta(seconds=reset_timeout_seconds)
        self.failure_count = 0
        self.state = "closed"  # "closed" | "open" | "half_open"
        self.last_failure_time = None
        self._lock = threading.Lock()

    def allow_request(self) -> bool:
        """
        Return True if a call may go through, False while the circuit is open.
        """
        with self._lock:
            if self.state == "closed":
                return True
            if self.state == "half_open":
                # a trial call is already in flight
                return False
            if self.last_failure_time is None:
                return False
            if utc_now() - self.last_failure_time >= self.reset_timeout:
                self.state = "half_open"
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            self.state = "closed"
            self.last_failure_time = None

    def record_failure(self) -> None:
        """
        Count a failure and open the circuit once the threshold is reached.

        A failed half-open trial reopens the circuit straight away.
        """
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = utc_now()
            if self.state == "half_open" or self.failure_count >= self.max_failures:
                if self.state != "open":
                    logger.warning(
                        "Circuit %s opened after %d failure(s)", self.name, self.failure_count
                    )
                self.state = "open"
