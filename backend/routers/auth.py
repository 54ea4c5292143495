"""
Auth router: login against the upstream Xtream server and logout.
"""
import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict

from auth_gate import AuthContext, require_session
from config import get_settings
from errors import InvalidCredentials, InvalidRequest
from session_store import Credentials, SessionStore, get_session_store
from tokens import issue_token
from url_validator import sanitize_input, validate_dns_url
from xtream_client import XtreamClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])

CREDENTIAL_MAX_LENGTH = 100


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    """Login form. Fields are typed loosely and validated by hand for 400s."""
    model_config = ConfigDict(extra="ignore")

    dns: Any = None
    username: Any = None
    password: Any = None


class LoginUser(BaseModel):
    username: Any = None
    status: Any = None
    exp_date: Any = None
    active_cons: Any = None
    max_connections: Any = None


class LoginResponse(BaseModel):
    token: str
    user: LoginUser


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("/login", response_model=LoginResponse)
async def login(
    http_request: Request,
    store: SessionStore = Depends(get_session_store),
):
    """Validate the server address, check credentials upstream and open a session."""
    # Missing or malformed body is a 400
    try:
        body = await http_request.json()
    except ValueError:
        raise InvalidRequest("Missing required fields")
    if not isinstance(body, dict):
        raise InvalidRequest("Missing required fields")
    request = LoginRequest.model_validate(body)

    if not request.dns or not request.username or not request.password:
        raise InvalidRequest("Missing required fields")

    username = sanitize_input(request.username, CREDENTIAL_MAX_LENGTH)
    password = sanitize_input(request.password, CREDENTIAL_MAX_LENGTH)
    if not username or not password:
        raise InvalidRequest("Invalid credentials format")

    origin = await validate_dns_url(request.dns)
    credentials = Credentials(origin=origin, username=username, password=password)

    start = time.time()
    try:
        user_info = await XtreamClient(credentials).authenticate()
    except InvalidCredentials:
        logger.warning("[AUTH] Upstream rejected login for %s on %s", username, origin)
        raise

    sid, _ = store.create(credentials)
    token = issue_token(sid, get_settings().login_token_ttl)

    elapsed_ms = (time.time() - start) * 1000
    logger.info("[AUTH] Login for %s on %s succeeded in %.1fms", username, origin, elapsed_ms)

    return LoginResponse(
        token=token,
        user=LoginUser(
            username=user_info.get("username"),
            status=user_info.get("status"),
            exp_date=user_info.get("exp_date"),
            active_cons=user_info.get("active_cons"),
            max_connections=user_info.get("max_connections"),
        ),
    )


@router.post("/logout")
async def logout(
    auth: AuthContext = Depends(require_session),
    store: SessionStore = Depends(get_session_store),
):
    """Destroy the session; every token referencing it stops working."""
    store.delete(auth.sid)
    logger.info("[AUTH] Logout for %s", auth.credentials.username)
    return {"status": "logged_out"}
