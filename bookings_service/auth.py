from typing import Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import get_settings
from .models import Requester, UserRole

security = HTTPBearer()


def decode_requester(token: str) -> Requester:
    """
    Decode a bearer token into the requester it identifies.

    The token is issued by the identity service and is trusted as-is once
    its signature and expiry check out.

    Parameters
    ----------
    token : str
        Encoded JWT with ``sub``, ``user_id`` and ``role`` claims.

    Returns
    -------
    Requester
        Identity and role of the caller.

    Raises
    ------
    HTTPException
        If the token is invalid, expired, or lacks the required claims.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        user_id = payload.get("user_id")
        role = UserRole(payload.get("role"))
        if payload.get("sub") is None or user_id is None:
            raise credentials_exception
    except (JWTError, ValueError):
        raise credentials_exception

    return Requester(user_id=int(user_id), role=role)


async def get_current_requester(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Requester:
    return decode_requester(credentials.credentials)


def require_roles(*allowed_roles: UserRole) -> Callable:
    """
    Build a dependency that enforces a set of allowed roles.

    Parameters
    ----------
    allowed_roles : UserRole
        One or more roles that are permitted to access a route.

    Returns
    -------
    Callable
        A FastAPI dependency that returns the requester, or raises HTTP 403
        if its role is not allowed.
    """

    async def dependency(requester: Requester = Depends(get_current_requester)) -> Requester:
        if requester.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return requester

    return dependency
