# mcp_oauth/storage/cleanup.py
import asyncio
import logging
from typing import Optional

from .errors import StorageError
from .storage_interfaces import AbstractOAuthStorage

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL_SECONDS = 300.0


class ExpiredRecordCleaner:
    """
    Periodically calls ``cleanup_expired()`` on a storage backend.

    Purely opportunistic: reads already treat expired records as missing,
    so a failed sweep is logged and the loop simply waits for the next one.
    """

    def __init__(self, storage: AbstractOAuthStorage, interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive.")
        self.storage = storage
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="oauth-expired-record-cleaner")
        logger.info(f"Expired record cleaner started (interval {self.interval_seconds}s).")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expired record cleaner stopped.")

    async def run_once(self) -> int:
        """Runs a single sweep. Storage failures are logged and reported as zero removals."""
        try:
            removed = await self.storage.cleanup_expired()
        except StorageError as e:
            logger.warning(f"Expired record cleanup failed: {e!r}")
            return 0
        if removed:
            logger.debug(f"Expired record cleanup removed {removed} record(s).")
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()
