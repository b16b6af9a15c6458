"""
Session token verification.

Tokens are issued by the sign-in service; this backend only verifies them and
turns their claims into a Session for access decisions.
"""
import jwt
from typing import Optional

from cms_backend.core import config
from cms_backend.features.permissions.context import Session
from cms_backend.utils import get_logger


log = get_logger(__name__)


def verify_session_token(token: str) -> dict:
    """
    Verify a session JWT and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload ("sub" is the user id)

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired or has no subject
    """
    return jwt.decode(
        token,
        config.JWT_SECRET,
        algorithms=[config.JWT_ALGORITHM],
        options={"require": ["sub"], "verify_exp": True},
    )


def session_from_token(token: Optional[str]) -> Optional[Session]:
    """
    Build a Session from a bearer token.

    Missing, expired or malformed tokens give None (anonymous), never an error.
    """
    if not token:
        return None

    try:
        payload = verify_session_token(token)
    except jwt.ExpiredSignatureError:
        log.debug("Session token expired")
        return None
    except jwt.InvalidTokenError as e:
        log.info("Invalid session token: %s", e)
        return None

    return Session(
        user_id=str(payload["sub"]),
        is_admin=payload.get("is_admin") is True,
        email=payload.get("email"),
        name=payload.get("name"),
    )
