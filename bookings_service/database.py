from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_settings
from .errors import BookingError, InternalFailure
from .logger import get_logger

logger = get_logger(__name__)

DATABASE_URL = get_settings().database_url

TRANSIENT_ERROR_MARKERS = (
    "deadlock detected",
    "could not serialize access",
    "database is locked",
    "lock timeout",
)


def build_engine(database_url: str):
    """
    Create the SQLAlchemy engine for the bookings database.

    SQLite has no row-level locks, so every SQLite transaction is opened with
    ``BEGIN IMMEDIATE``. That takes the database write lock up front and makes
    concurrent check-then-insert sequences run one after another. Other
    backends rely on ``SELECT ... FOR UPDATE`` issued by the repositories.

    Parameters
    ----------
    database_url : str
        SQLAlchemy connection URL.

    Returns
    -------
    Engine
        Configured engine.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        # hand transaction control to the "begin" hook below
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)

Base = declarative_base()


def is_transient_error(exc: OperationalError) -> bool:
    """Return True for lock/serialization failures worth retrying."""
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)


def get_db():
    """
    Yield a SQLAlchemy database session for the Bookings service.

    This function is used as a FastAPI dependency, creating a scoped
    session per HTTP request and ensuring it is closed afterwards.

    Yields
    ------
    Session
        Active SQLAlchemy session bound to the bookings database engine.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_in_transaction(db, operation, retries: int = 3):
    """
    Run ``operation()`` as one transaction on ``db`` and commit it.

    Booking errors roll back and propagate unchanged. Transient lock or
    serialization failures roll back and are retried up to ``retries``
    attempts in total; any other storage failure becomes ``InternalFailure``.

    Parameters
    ----------
    db : Session
        Session owning the transaction.
    operation : Callable[[], T]
        Work to perform; it must be safe to run again after a rollback.
    retries : int
        Maximum number of attempts.

    Returns
    -------
    T
        Whatever ``operation`` returned on the committed attempt.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = operation()
            db.commit()
            return result
        except BookingError:
            db.rollback()
            raise
        except OperationalError as exc:
            db.rollback()
            if is_transient_error(exc) and attempt < retries:
                logger.info("Transient storage error, retrying (attempt %d/%d)", attempt, retries)
                continue
            logger.exception("Storage operation failed")
            raise InternalFailure() from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Storage operation failed")
            raise InternalFailure() from exc
