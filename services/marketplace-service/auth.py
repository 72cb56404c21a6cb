"""Authentication utilities."""
from dataclasses import dataclass
from typing import Callable, Optional
from fastapi import Depends, Header
from sqlalchemy.orm import Session
import logging

from database import get_db
from exceptions import Forbidden, Unauthorized
from models import User, UserRole
from monitoring import auth_failures_counter, auth_attempts_counter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    """Caller identity resolved for one request."""
    id: str
    email: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from a ``Bearer <token>`` header, or None."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> CurrentUser:
    """
    Resolve the bearer token to the calling user.

    Args:
        authorization: Authorization header value
        db: Database session

    Returns:
        The authenticated caller

    Raises:
        Unauthorized: If the header is missing, malformed or the token is unknown
    """
    auth_attempts_counter.add(1, {"type": "bearer_token"})

    if authorization is None:
        auth_failures_counter.add(1, {"reason": "missing_header"})
        logger.warning("Authentication failed: Missing authorization header")
        raise Unauthorized("Missing authorization header")

    token = extract_bearer_token(authorization)
    if token is None:
        auth_failures_counter.add(1, {"reason": "invalid_format"})
        logger.warning("Authentication failed: Invalid authorization header format")
        raise Unauthorized("Invalid authorization header format")

    user = db.query(User).filter(User.api_token == token).first()
    if user is None:
        auth_failures_counter.add(1, {"reason": "invalid_token"})
        logger.warning("Authentication failed: Invalid token", extra={
            "token_prefix": token[:4] + "..."
        })
        raise Unauthorized("Invalid token")

    logger.debug("Authentication successful", extra={"user_id": user.id})
    return CurrentUser(id=user.id, email=user.email, role=user.role)


def require_role(*roles: UserRole) -> Callable[..., CurrentUser]:
    """Build a dependency that admits only callers holding one of ``roles``."""

    def guard(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            logger.warning("Role check failed", extra={
                "user_id": user.id,
                "role": user.role.value,
                "required": [r.value for r in roles]
            })
            raise Forbidden("Insufficient permissions")
        return user

    return guard
