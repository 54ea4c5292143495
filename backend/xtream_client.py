"""
Xtream Codes API client.

Every capability issues exactly one GET against the upstream origin's
player_api.php with the session credentials as query parameters. Metadata
calls never follow redirects so an upstream cannot bounce the proxy (and
the credentials in the query string) to another host. Only the live
playlist pass-through follows redirects, with a small bound.
"""
import asyncio
import logging
from typing import Optional

import httpx

from config import get_settings
from errors import InvalidCredentials, UpstreamUnavailable
from session_store import Credentials
from url_validator import validate_stream_id

logger = logging.getLogger(__name__)

PLAYER_API_PATH = "/player_api.php"
ACTIVE_STATUS = "Active"

STREAM_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "*/*",
    "Accept-Encoding": "identity",
    "Connection": "keep-alive",
}


class XtreamClient:
    """API client bound to one set of Xtream credentials."""

    def __init__(
        self,
        credentials: Credentials,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.credentials = credentials
        self.base_url = credentials.origin.rstrip("/")
        self._client = http_client or get_http_client()
        # Total deadline per metadata call; httpx timeouts apply per phase
        self.timeout = timeout if timeout is not None else get_settings().upstream_timeout

    def _params(self, **extra) -> dict:
        params = {
            "username": self.credentials.username,
            "password": self.credentials.password,
        }
        params.update(extra)
        return params

    async def _get_json(self, description: str, **params):
        """GET player_api.php and decode JSON, mapping every failure to UpstreamUnavailable."""
        url = f"{self.base_url}{PLAYER_API_PATH}"
        try:
            response = await asyncio.wait_for(
                self._client.get(
                    url,
                    params=self._params(**params),
                    follow_redirects=False,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error("[XTREAM] %s exceeded %ss deadline", description, self.timeout)
            raise UpstreamUnavailable()
        except httpx.TimeoutException as e:
            logger.error("[XTREAM] %s timed out: %s", description, e)
            raise UpstreamUnavailable()
        except httpx.HTTPError as e:
            logger.error("[XTREAM] %s failed: %s", description, e)
            raise UpstreamUnavailable()

        if response.is_redirect:
            logger.warning("[XTREAM] %s refused redirect (status %d)", description, response.status_code)
            raise UpstreamUnavailable()
        if not response.is_success:
            logger.error("[XTREAM] %s returned status %d", description, response.status_code)
            raise UpstreamUnavailable()

        try:
            return response.json()
        except ValueError as e:
            logger.error("[XTREAM] %s returned invalid JSON: %s", description, e)
            raise UpstreamUnavailable()

    # -------------------------------------------------------------------------
    # Account
    # -------------------------------------------------------------------------

    async def authenticate(self) -> dict:
        """Check the credentials upstream and return user_info."""
        data = await self._get_json("Login")
        user_info = data.get("user_info") if isinstance(data, dict) else None
        if not isinstance(user_info, dict) or user_info.get("status") != ACTIVE_STATUS:
            raise InvalidCredentials()
        return user_info

    async def get_account_info(self) -> dict:
        """Get user_info and server_info for the account."""
        data = await self._get_json("Account info")
        if not isinstance(data, dict):
            logger.error("[XTREAM] Account info response was not an object")
            raise UpstreamUnavailable()
        return data

    # -------------------------------------------------------------------------
    # Live streams
    # -------------------------------------------------------------------------

    async def get_live_streams(self):
        """Get the raw live channel list."""
        return await self._get_json("Live streams", action="get_live_streams")

    def stream_url(self, stream_id) -> str:
        """Direct upstream HLS playlist URL (contains credentials)."""
        stream_id = validate_stream_id(stream_id)
        return (
            f"{self.base_url}/live/{self.credentials.username}/"
            f"{self.credentials.password}/{stream_id}.m3u8"
        )

    async def open_stream(self, stream_id) -> httpx.Response:
        """
        Open the live playlist as a streaming response.

        Redirects are followed (bounded by the shared client's max_redirects).
        The caller must close the returned response.
        """
        url = self.stream_url(stream_id)
        request = self._client.build_request("GET", url, headers=STREAM_HEADERS)
        try:
            response = await self._client.send(request, stream=True, follow_redirects=True)
        except httpx.TimeoutException as e:
            logger.error("[XTREAM] Stream %s timed out: %s", stream_id, e)
            raise UpstreamUnavailable("Failed to proxy stream")
        except httpx.HTTPError as e:
            logger.error("[XTREAM] Stream %s failed: %s", stream_id, e)
            raise UpstreamUnavailable("Failed to proxy stream")

        if not response.is_success:
            logger.error("[XTREAM] Stream %s returned status %d", stream_id, response.status_code)
            await response.aclose()
            raise UpstreamUnavailable("Failed to proxy stream")
        return response

    # -------------------------------------------------------------------------
    # EPG
    # -------------------------------------------------------------------------

    async def get_epg(self, stream_id) -> dict:
        """Get the raw (still base64-encoded) program guide for a stream."""
        stream_id = validate_stream_id(stream_id)
        data = await self._get_json(
            f"EPG for stream {stream_id}",
            action="get_simple_data_table",
            stream_id=stream_id,
        )
        # Some panels answer a channel without guide data with a bare [] or null
        if isinstance(data, list):
            return {"epg_listings": data}
        if not isinstance(data, dict):
            logger.debug("[XTREAM] EPG for stream %s was not an object, treating as empty", stream_id)
            return {"epg_listings": []}
        return data


# Shared HTTP client
_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Get the shared AsyncClient, creating it on first use."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        settings = get_settings()
        _http_client = httpx.AsyncClient(
            timeout=settings.upstream_timeout,
            follow_redirects=False,
            max_redirects=settings.stream_max_redirects,
        )
    return _http_client


async def close_http_client() -> None:
    """Close the shared client (call at shutdown)."""
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
