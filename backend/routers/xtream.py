"""
Xtream router: proxied reads against the session's upstream server.

Live channel list, playback URLs, the live playlist pass-through, EPG
(single and batch, served through the EPG cache), account info and cache
diagnostics. Every route resolves credentials through the auth gate; the
browser never sees the upstream password except inside a direct stream URL
it asked for.
"""
import base64
import logging
import time
from urllib.parse import urlsplit

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from auth_gate import AuthContext, require_session, require_stream_session
from config import get_settings
from epg_cache import EpgCache, get_epg_cache
from epg_service import EpgService, get_epg_service
from errors import InvalidRequest, UpstreamUnavailable
from tokens import issue_token
from url_validator import validate_stream_id
from xtream_client import XtreamClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/xtream", tags=["Xtream"])

DEFAULT_PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"


def _is_https_request(request: Request) -> bool:
    if request.url.scheme == "https":
        return True
    if get_settings().trust_proxy_headers:
        return request.headers.get("x-forwarded-proto", "").split(",")[0].strip() == "https"
    return False


def _obfuscate(url: str) -> str:
    return base64.b64encode(url.encode("utf-8")).decode("ascii")


def _parse_refresh(request: Request) -> bool:
    return request.query_params.get("refresh") == "true"


# ---------------------------------------------------------------------------
# Live streams
# ---------------------------------------------------------------------------

@router.get("/live")
async def get_live_streams(auth: AuthContext = Depends(require_session)):
    """Raw upstream live channel list."""
    start = time.time()
    try:
        result = await XtreamClient(auth.credentials).get_live_streams()
    except UpstreamUnavailable:
        raise UpstreamUnavailable("Failed to fetch streams")
    elapsed_ms = (time.time() - start) * 1000
    count = len(result) if isinstance(result, list) else 0
    logger.debug("[XTREAM] Fetched %d live streams in %.1fms", count, elapsed_ms)
    return result


@router.get("/play/{stream_id}")
async def get_play_url(
    stream_id: str,
    request: Request,
    auth: AuthContext = Depends(require_session),
):
    """
    Playback URL for a stream, base64-obfuscated.

    When the page is served over HTTPS but the upstream only speaks HTTP,
    the browser would block the mixed content, so a same-origin proxy URL
    carrying a short-lived stream token is returned instead.
    """
    stream_id = validate_stream_id(stream_id)
    settings = get_settings()
    issued_at = int(time.time() * 1000)

    if _is_https_request(request) and auth.credentials.origin.startswith("http:"):
        stream_token = issue_token(auth.sid, settings.stream_token_ttl)
        host = request.headers.get("host", request.url.netloc)
        proxy_url = f"https://{host}/api/xtream/stream/{stream_id}?token={stream_token}"
        logger.debug("[XTREAM] Issued proxy URL for stream %s", stream_id)
        return {"u": _obfuscate(proxy_url), "t": issued_at, "proxy": True}

    stream_url = XtreamClient(auth.credentials).stream_url(stream_id)
    return {"u": _obfuscate(stream_url), "t": issued_at, "proxy": False}


@router.get("/stream/{stream_id}")
async def proxy_stream(
    stream_id: str,
    auth: AuthContext = Depends(require_stream_session),
):
    """Pass the upstream live playlist through unmodified."""
    stream_id = validate_stream_id(stream_id)
    upstream = await XtreamClient(auth.credentials).open_stream(stream_id)

    async def body():
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            logger.warning("[XTREAM] Stream %s interrupted: %s", stream_id, e)
        finally:
            # Also runs when the client disconnects, aborting the upstream fetch
            await upstream.aclose()

    headers = {
        "Content-Type": upstream.headers.get("content-type") or DEFAULT_PLAYLIST_CONTENT_TYPE,
        "Cache-Control": "no-cache",
        "Access-Control-Allow-Origin": "*",
    }
    return StreamingResponse(body(), headers=headers)


# ---------------------------------------------------------------------------
# EPG
# ---------------------------------------------------------------------------

@router.get("/epg/{stream_id}")
async def get_epg(
    stream_id: str,
    request: Request,
    auth: AuthContext = Depends(require_session),
    service: EpgService = Depends(get_epg_service),
):
    """Decoded program guide for a stream; empty listings when unavailable."""
    return await service.get_epg(auth.credentials, stream_id, refresh=_parse_refresh(request))


@router.post("/epg-batch")
async def get_epg_batch(
    request: Request,
    auth: AuthContext = Depends(require_session),
    service: EpgService = Depends(get_epg_service),
):
    """Program guides for up to 50 streams: {"streamIds": [...]}."""
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("Request body must be JSON")

    stream_ids = body.get("streamIds") if isinstance(body, dict) else None
    return await service.get_epg_batch(auth.credentials, stream_ids, refresh=_parse_refresh(request))


@router.get("/cache-stats")
async def get_cache_stats(
    auth: AuthContext = Depends(require_session),
    cache: EpgCache = Depends(get_epg_cache),
):
    """EPG cache diagnostics."""
    return cache.stats()


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------

@router.get("/account")
async def get_account(auth: AuthContext = Depends(require_session)):
    """Account summary with the upstream server reduced to its hostname."""
    try:
        data = await XtreamClient(auth.credentials).get_account_info()
    except UpstreamUnavailable:
        raise UpstreamUnavailable("Failed to fetch account info")

    user_info = data.get("user_info")
    server_info = data.get("server_info") or {}
    if not isinstance(user_info, dict) or not isinstance(server_info, dict):
        logger.error("[XTREAM] Account info missing user_info/server_info")
        raise UpstreamUnavailable("Failed to fetch account info")

    hostname = ""
    server_url = server_info.get("url")
    if server_url:
        try:
            hostname = urlsplit(f"http://{server_url}").hostname or ""
        except ValueError:
            logger.debug("[XTREAM] Unparseable server_info.url")

    return {
        "username": user_info.get("username"),
        "status": user_info.get("status"),
        "exp_date": user_info.get("exp_date"),
        "active_cons": user_info.get("active_cons"),
        "max_connections": user_info.get("max_connections"),
        "url": hostname,
        "port": server_info.get("port"),
    }
