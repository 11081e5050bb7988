"""
Bearer token verification.

Tokens are HS256 JWTs carrying the user identifier in the ``userId`` claim.
Verification fails closed: anything malformed, expired or signed with another
key is treated as "no identity" and never raises into the caller.
"""
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header

from config import Settings, get_settings
from errors import Internal, Unauthorized

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TTL = timedelta(days=7)


def create_access_token(user_id: str, secret: str, expires_in: timedelta = TOKEN_TTL, **claims) -> str:
    payload = {
        "userId": user_id,
        "exp": datetime.now(timezone.utc) + expires_in,
        **claims,
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def verify_token(authorization: Optional[str], secret: Optional[str]) -> Optional[str]:
    """Return the user id carried by an ``Authorization: Bearer`` header, or None."""
    if not authorization or not secret:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    try:
        decoded = jwt.decode(token.strip(), secret, algorithms=[ALGORITHM])
    except jwt.PyJWTError as exc:
        logger.debug("Rejected bearer token: %s", exc)
        return None
    user_id = decoded.get("userId")
    if not isinstance(user_id, str) or not user_id:
        return None
    return user_id


def get_current_user_id(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> str:
    if not settings.jwt_secret:
        raise Internal("JWT_SECRET not configured")
    user_id = verify_token(authorization, settings.jwt_secret)
    if user_id is None:
        raise Unauthorized("Please login to continue")
    return user_id


def require_admin(
    x_admin_key: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.admin_api_key or not x_admin_key:
        raise Unauthorized("Admin access required")
    if not hmac.compare_digest(x_admin_key.encode(), settings.admin_api_key.encode()):
        raise Unauthorized("Admin access required")
