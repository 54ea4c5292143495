"""
Bearer tokens referencing a server-side session.

A token is an HS256 JWT carrying {sid, exp}. The same issue/verify pair
serves the long-lived login token and the short-lived token embedded in
stream proxy URLs; only the lifetime differs.
"""
import time
from typing import Optional

import jwt

from config import get_settings
from errors import Forbidden

ALGORITHM = "HS256"


def issue_token(sid: str, lifetime: float, secret: Optional[str] = None) -> str:
    """Sign a token for session `sid` valid for `lifetime` seconds."""
    secret = secret or get_settings().jwt_secret
    payload = {"sid": sid, "exp": int(time.time() + lifetime)}
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def verify_token(token: str, secret: Optional[str] = None) -> str:
    """
    Verify signature and expiry and return the session id.

    Raises Forbidden for any tampered, expired or malformed token.
    """
    secret = secret or get_settings().jwt_secret
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            options={"require": ["exp", "sid"]},
        )
    except jwt.ExpiredSignatureError:
        raise Forbidden("Token expired")
    except jwt.InvalidTokenError:
        raise Forbidden("Invalid token")

    sid = payload.get("sid")
    if not isinstance(sid, str) or not sid:
        raise Forbidden("Invalid token")
    return sid
