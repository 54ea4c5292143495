"""
EPG fetch paths on top of the EPG cache.

get_epg() serves one stream, get_epg_batch() up to EPG_BATCH_MAX_SIZE streams
in one call. Misses are fetched from the upstream get_simple_data_table
action, decoded, and cached for every session on the same origin.

A missing program guide is an expected condition for many channels, so
upstream failures never propagate from here: they degrade to an empty
listings result.
"""
import asyncio
import base64
import binascii
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from config import get_settings
from epg_cache import EpgCache, cache_key, get_epg_cache
from errors import InvalidRequest, ProxyError
from session_store import Credentials
from url_validator import validate_stream_id
from xtream_client import XtreamClient

logger = logging.getLogger(__name__)

EPG_BATCH_MAX_SIZE = 50
EPG_BATCH_CONCURRENCY = 10

_URLSAFE_TO_STANDARD = str.maketrans("-_", "+/")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def decode_base64_text(value) -> str:
    """Decode a base64 EPG text field; non-base64 values are returned as-is."""
    if not value:
        return ""
    if not isinstance(value, str):
        return str(value)
    # Accept line-wrapped and URL-safe alphabets
    text = "".join(value.split()).translate(_URLSAFE_TO_STANDARD)
    try:
        raw = base64.b64decode(text + "=" * (-len(text) % 4), validate=True)
    except (binascii.Error, ValueError):
        return value
    return raw.decode("utf-8", errors="replace")


def parse_epg_timestamp(value) -> int:
    """Convert an EPG start/end value to integer Unix seconds (0 if unusable)."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)

    text = str(value).strip()
    if text.isdigit():
        return int(text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("[EPG] Unparseable timestamp %r", value)
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def decode_listing(listing: dict) -> dict:
    decoded = dict(listing)
    decoded["title"] = decode_base64_text(listing.get("title"))
    decoded["description"] = decode_base64_text(listing.get("description"))
    decoded["start"] = parse_epg_timestamp(listing.get("start"))
    decoded["end"] = parse_epg_timestamp(listing.get("end"))
    return decoded


def decode_epg_payload(data: dict) -> dict:
    """Decode base64 titles/descriptions and textual timestamps in epg_listings."""
    decoded = dict(data)
    listings = data.get("epg_listings")
    if isinstance(listings, list):
        decoded["epg_listings"] = [
            decode_listing(item) for item in listings if isinstance(item, dict)
        ]
    return decoded


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class EpgService:
    """Cache-first EPG lookups with in-flight de-duplication."""

    def __init__(
        self,
        cache: EpgCache,
        client_factory: Callable[[Credentials], XtreamClient] = XtreamClient,
        batch_max_size: int = EPG_BATCH_MAX_SIZE,
        batch_concurrency: int = EPG_BATCH_CONCURRENCY,
    ):
        self.cache = cache
        self._client_factory = client_factory
        self.batch_max_size = batch_max_size
        self.batch_concurrency = batch_concurrency
        self._inflight: dict[str, asyncio.Task] = {}

    async def _fetch_from_upstream(self, credentials: Credentials, stream_id: str) -> dict:
        client = self._client_factory(credentials)
        data = decode_epg_payload(await client.get_epg(stream_id))
        self.cache.set(credentials.origin, stream_id, data)
        return data

    async def _fetch(self, credentials: Credentials, stream_id: str) -> dict:
        """Fetch and cache one stream, sharing a single upstream call per key."""
        key = cache_key(credentials.origin, stream_id)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch_from_upstream(credentials, stream_id))
            self._inflight[key] = task

            def _done(t: asyncio.Task, key=key):
                self._inflight.pop(key, None)
                if not t.cancelled():
                    t.exception()

            task.add_done_callback(_done)
        return await asyncio.shield(task)

    async def get_epg(self, credentials: Credentials, stream_id, refresh: bool = False) -> dict:
        """EPG for one stream, annotated with _cached."""
        stream_id = validate_stream_id(stream_id)

        if not refresh:
            cached = self.cache.get(credentials.origin, stream_id)
            if cached is not None:
                logger.debug("[EPG] Cache hit for stream %s", stream_id)
                return {
                    **cached,
                    "_cached": True,
                    "_cacheKey": cache_key(credentials.origin, stream_id),
                }

        start = time.time()
        try:
            data = await self._fetch(credentials, stream_id)
        except ProxyError as e:
            logger.warning("[EPG] Failed to fetch EPG for stream %s: %s", stream_id, e)
            return {"epg_listings": []}
        except Exception as e:
            logger.exception("[EPG] Unexpected error fetching EPG for stream %s: %s", stream_id, e)
            return {"epg_listings": []}

        elapsed_ms = (time.time() - start) * 1000
        logger.debug("[EPG] Fetched EPG for stream %s in %.1fms", stream_id, elapsed_ms)
        return {**data, "_cached": False}

    async def get_epg_batch(self, credentials: Credentials, stream_ids, refresh: bool = False) -> dict:
        """
        EPG for many streams in one call.

        Only the first batch_max_size ids are processed. Invalid ids are
        reported with an error, failed fetches with empty listings; neither
        affects the rest of the batch.
        """
        if not isinstance(stream_ids, list) or not stream_ids:
            raise InvalidRequest("streamIds must be a non-empty array")

        limited_ids = stream_ids[: self.batch_max_size]
        results: dict[str, dict] = {}
        uncached_ids: list[str] = []

        for raw_id in limited_ids:
            try:
                stream_id = validate_stream_id(raw_id)
            except InvalidRequest:
                results[str(raw_id)] = {"epg_listings": [], "error": "Invalid stream ID"}
                continue

            if stream_id in results or stream_id in uncached_ids:
                continue

            if not refresh:
                cached = self.cache.get(credentials.origin, stream_id)
                if cached is not None:
                    results[stream_id] = {
                        "epg_listings": cached.get("epg_listings") or [],
                        "_cached": True,
                    }
                    continue
            uncached_ids.append(stream_id)

        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def fetch_one(stream_id: str) -> tuple[str, dict]:
            async with semaphore:
                try:
                    data = await self._fetch(credentials, stream_id)
                except Exception as e:
                    # Many channels have no guide; this is expected
                    logger.debug("[EPG] Batch fetch failed for stream %s: %s", stream_id, e)
                    return stream_id, {"epg_listings": []}
            return stream_id, {"epg_listings": data.get("epg_listings") or [], "_cached": False}

        start = time.time()
        for stream_id, result in await asyncio.gather(*(fetch_one(s) for s in uncached_ids)):
            results[stream_id] = result

        from_cache = sum(1 for r in results.values() if r.get("_cached") is True)
        from_api = sum(1 for r in results.values() if r.get("_cached") is False)
        logger.info(
            "[EPG] Batch of %d ids: %d cached, %d fetched in %.1fms",
            len(stream_ids), from_cache, from_api, (time.time() - start) * 1000,
        )

        return {
            "results": results,
            "totalRequested": len(stream_ids),
            "totalReturned": len(results),
            "fromCache": from_cache,
            "fromApi": from_api,
        }


# Singleton instance
_service: Optional[EpgService] = None


def get_epg_service() -> EpgService:
    """Get the EPG service bound to the process-wide cache."""
    global _service
    if _service is None:
        settings = get_settings()
        _service = EpgService(
            get_epg_cache(),
            batch_max_size=settings.epg_batch_max_size,
            batch_concurrency=settings.epg_batch_concurrency,
        )
    return _service


def reset_epg_service() -> None:
    global _service
    _service = None
