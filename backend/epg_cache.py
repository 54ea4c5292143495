"""
In-memory EPG cache.

Entries are keyed by (origin, stream_id), not by user: program guide data
is the same for every subscriber of a given upstream server, so a hit for
one session is valid for any other session on the same origin.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from background import PeriodicTask
from config import get_settings

logger = logging.getLogger(__name__)

EPG_CACHE_TTL_SECONDS = 6 * 60 * 60
EPG_SWEEP_INTERVAL_SECONDS = 30 * 60


@dataclass
class EpgCacheEntry:
    data: dict
    cached_at: float
    expires_at: float


def cache_key(origin: str, stream_id: str) -> str:
    """Flat string form of the (origin, stream_id) key."""
    return f"{origin}:{stream_id}"


def _iso(timestamp: float) -> str:
    return (
        datetime.fromtimestamp(timestamp, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class EpgCache:
    """Time-windowed cache of decoded EPG payloads."""

    def __init__(
        self,
        ttl: float = EPG_CACHE_TTL_SECONDS,
        sweep_interval: float = EPG_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, EpgCacheEntry] = {}
        self._lock = threading.Lock()
        self._sweeper = PeriodicTask("epg-cache-sweep", sweep_interval, self.sweep)

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, origin: str, stream_id: str) -> Optional[dict]:
        """Return cached data, or None on miss or expiry (expired entries are dropped)."""
        key = cache_key(origin, stream_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.data

    def set(self, origin: str, stream_id: str, data: dict) -> None:
        """Store (or fully overwrite) the entry for a stream."""
        now = self._clock()
        entry = EpgCacheEntry(data=data, cached_at=now, expires_at=now + self._ttl)
        with self._lock:
            self._entries[cache_key(origin, stream_id)] = entry

    def sweep(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
            remaining = len(self._entries)
        if expired:
            logger.info(
                "[EPG] Cache cleanup removed %d expired entries. Active: %d",
                len(expired), remaining,
            )
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        """Diagnostic snapshot of the cache."""
        with self._lock:
            items = list(self._entries.items())

        return {
            "epgCacheSize": len(items),
            "epgCacheTTL": f"{self._ttl / 60:g} minutes",
            "entries": [
                {
                    "key": key,
                    "cachedAt": _iso(entry.cached_at),
                    "expiresAt": _iso(entry.expires_at),
                    "listingsCount": len(entry.data.get("epg_listings") or []),
                }
                for key, entry in items
            ],
        }

    async def start(self) -> None:
        await self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()

    @property
    def sweeper(self) -> PeriodicTask:
        return self._sweeper


# Singleton instance
_cache: Optional[EpgCache] = None


def get_epg_cache() -> EpgCache:
    """Get the process-wide EPG cache, creating it on first use."""
    global _cache
    if _cache is None:
        settings = get_settings()
        _cache = EpgCache(ttl=settings.epg_cache_ttl, sweep_interval=settings.epg_sweep_interval)
    return _cache


def reset_epg_cache() -> None:
    """Drop the singleton (tests and shutdown)."""
    global _cache
    _cache = None
