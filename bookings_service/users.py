"""Booking-side user directory, kept in sync by the identity service."""

from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .database import run_in_transaction
from .errors import Conflict, Forbidden, NotFound
from .intervals import utc_now
from .logger import get_logger
from .models import Requester, User, UserRole
from .repository import UserRepository
from .service import ensure_admin

logger = get_logger(__name__)


class UserDirectory:
    """
    Create and update the user rows that bookings refer to.

    The identity service owns accounts; this service only needs each user's
    username, email, role and enabled flag, under the same id the access
    tokens carry.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.users = UserRepository(db)

    def _transaction(self, operation):
        return run_in_transaction(self.db, operation, retries=self.settings.transaction_retries)

    def get_user(self, requester: Requester, user_id: int) -> User:
        if not requester.is_admin and requester.user_id != user_id:
            raise Forbidden("Not allowed to view this user")

        def operation():
            user = self.users.get(user_id)
            if user is None:
                raise NotFound("User not found")
            return user

        return self._transaction(operation)

    def upsert_user(
        self,
        requester: Requester,
        user_id: int,
        username: str,
        email: str,
        role: UserRole = UserRole.USER,
        is_enabled: bool = True,
    ) -> Tuple[User, bool]:
        """
        Insert or update the user with ``user_id``.

        Parameters
        ----------
        requester : Requester
            Must be an admin.
        user_id : int
            Identifier issued by the identity service.
        username, email : str
            Account details used in notifications.
        role : UserRole
            Booking entitlements.
        is_enabled : bool
            Disabled users cannot create bookings.

        Returns
        -------
        Tuple[User, bool]
            The stored user and whether it was newly created.

        Raises
        ------
        Forbidden
            Requester is not an admin.
        Conflict
            The username belongs to another user.
        """
        ensure_admin(requester)

        def operation():
            owner = self.users.get_by_username(username)
            if owner is not None and owner.id != user_id:
                raise Conflict("Username already taken by another user")

            user = self.users.get(user_id, lock=True)
            created = user is None
            try:
                if created:
                    user = self.users.add(
                        User(
                            id=user_id,
                            username=username,
                            email=email,
                            role=role,
                            is_enabled=is_enabled,
                            created_at=utc_now(),
                        )
                    )
                else:
                    user.username = username
                    user.email = email
                    user.role = role
                    user.is_enabled = is_enabled
                    self.db.flush()
            except IntegrityError:
                raise Conflict("Username already taken by another user")
            return user, created

        user, created = self._transaction(operation)
        logger.info("User %s %s by user %s", user_id, "created" if created else "updated", requester.user_id)
        return user, created
