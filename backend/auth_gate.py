"""
Bearer-token authentication for proxied routes.

No token at all is 401 (Unauthorized). A token that is present but fails
signature or expiry checks is 403 (Forbidden). A valid token whose session
is gone (logout, expiry) is 401 again: the client has to log in.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request

from errors import Unauthorized
from session_store import Credentials, SessionStore, get_session_store
from tokens import verify_token

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class AuthContext:
    """Resolved session attached to an authenticated request."""
    sid: str
    credentials: Credentials


def extract_bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if not header.startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


def resolve_session(token: Optional[str], store: SessionStore) -> AuthContext:
    """Verify a token and resolve its session; raises Unauthorized/Forbidden."""
    if not token:
        raise Unauthorized()

    sid = verify_token(token)
    session = store.get(sid)
    if session is None:
        logger.debug("[AUTH] Token references a missing or expired session")
        raise Unauthorized("Invalid session")
    return AuthContext(sid=sid, credentials=session.credentials)


async def require_session(
    request: Request,
    store: SessionStore = Depends(get_session_store),
) -> AuthContext:
    """Dependency: token from the Authorization header only."""
    return resolve_session(extract_bearer_token(request), store)


async def require_stream_session(
    request: Request,
    store: SessionStore = Depends(get_session_store),
) -> AuthContext:
    """Dependency for the stream pass-through: ?token= (for HLS players) or bearer header."""
    token = request.query_params.get("token") or extract_bearer_token(request)
    return resolve_session(token, store)
