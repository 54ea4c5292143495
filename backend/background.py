"""
Repeating background tasks.

Each in-memory store owns a PeriodicTask that runs its sweep on a fixed
interval, independent of request traffic. Tasks are started from the app
lifespan and cancelled at shutdown.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run a callable every `interval` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Union[object, Awaitable[object]]],
    ):
        self.name = name
        self.interval = interval
        self._func = func
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the repeating loop on the running event loop."""
        if self._running:
            logger.warning("[%s] Periodic task already running", self.name)
            return

        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("[%s] Periodic task started (interval=%ss)", self.name, self.interval)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[%s] Periodic task stopped", self.name)

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self) -> None:
        """Invoke the callable once, logging instead of raising on failure."""
        try:
            result = self._func()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception("[%s] Periodic task failed: %s", self.name, e)

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            await self.run_once()
