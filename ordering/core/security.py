"""
Access tokens for registered users and admins.

Tokens are HS256-signed JWTs whose ``sub`` claim is the user id. Issuing
them for logins belongs to the account service; this module only signs
(for promotion and tests) and verifies.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

import jwt

from ordering.core.config import get_settings
from ordering.core.errors import UnauthenticatedError
from ordering.database import utcnow

logger = logging.getLogger(__name__)


def create_access_token(
    user_id: int,
    expires_in: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> str:
    settings = get_settings()
    issued = now or utcnow()
    expires = issued + (expires_in or timedelta(minutes=settings.access_token_expire_minutes))
    payload = {"sub": str(user_id), "iat": issued, "exp": expires}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> int:
    """
    Verify signature and expiry, and return the user id from ``sub``.

    Raises:
        UnauthenticatedError: forged, unsigned, expired or malformed token
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected access token: {e}")
        raise UnauthenticatedError("Invalid token")

    subject = payload["sub"]
    if not isinstance(subject, str) or not subject.isdigit():
        raise UnauthenticatedError("Invalid token subject")
    return int(subject)
