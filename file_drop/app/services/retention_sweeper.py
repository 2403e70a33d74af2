"""Background task that deletes uploads older than the retention threshold."""

import asyncio
import time
from typing import Optional

import aiofiles.os

from file_drop import config
from file_drop.app.services.storage_manager import StorageManager
from file_drop.logger_config import setup_logger

logger = setup_logger()


class RetentionSweeper:
    """
    Periodically removes expired files from the storage directory.

    Sweeps once as soon as it starts, then every interval_seconds.
    """

    def __init__(
        self,
        storage_manager: StorageManager,
        interval_seconds: Optional[float] = None,
        threshold_seconds: Optional[float] = None,
    ):
        self.storage_manager = storage_manager
        self.interval_seconds = interval_seconds if interval_seconds is not None else config.CLEANUP_INTERVAL_SECONDS
        self.threshold_seconds = threshold_seconds if threshold_seconds is not None else config.FILE_EXPIRY_SECONDS
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._running:
            logger.warning("Retention sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Started retention sweeper (interval: {self.interval_seconds}s, "
            f"threshold: {self.threshold_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop the background sweep task."""
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

        logger.info("Stopped retention sweeper")

    async def _run(self) -> None:
        """Main loop: sweep, then sleep until the next interval."""
        while self._running:
            try:
                await self.sweep()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in retention sweeper: {e}", exc_info=True)
                await asyncio.sleep(self.interval_seconds)

    async def sweep(self, now: Optional[float] = None) -> None:
        """Delete every entry whose age exceeds the threshold.

        A failure on one entry is logged and the sweep moves on to the next.
        """
        if now is None:
            now = time.time()

        try:
            names = await self.storage_manager.list_names()
        except OSError as e:
            logger.error(f"Cleanup error: {e}")
            return

        logger.debug(f"Sweeping {len(names)} entries in {self.storage_manager.upload_dir}")

        for name in names:
            path = self.storage_manager.upload_dir / name
            try:
                stat = await aiofiles.os.stat(path)
            except OSError as e:
                logger.warning(f"Could not stat {name}: {e}")
                continue

            age = now - stat.st_mtime
            if age <= self.threshold_seconds:
                continue

            try:
                await aiofiles.os.remove(path)
            except OSError as e:
                logger.warning(f"Could not delete expired file {name}: {e}")
                continue
            logger.info(f"Deleted expired file: {name}")
