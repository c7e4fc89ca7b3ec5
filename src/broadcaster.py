"""
Broadcast Loop

Plays videos back to back: pick one from the catalog, announce its title,
stream it to the end, then check whether we have been asked to stop. The
continue flag is only consulted between videos; a video that has started
always plays to completion.
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional

from catalog import VideoCatalog
from errors import EmptyCatalogError, PipelineError, StreamOpenError
from notifier import NotificationManager
from streamer import Streamer

logger = logging.getLogger(__name__)


def derive_title(video: str) -> str:
    """'folder/My Video.flv' -> 'My Video'; a bare '.flv' gives ''."""
    name = PurePosixPath(video).name
    dot = name.rfind(".")
    return name[:dot] if dot >= 0 else name


class Broadcaster:
    def __init__(self,
                 catalog: VideoCatalog,
                 streamer: Streamer,
                 notifier: Optional[NotificationManager] = None,
                 empty_catalog_retry_delay: float = 30.0,
                 stop_on_failure: bool = True):
        self.catalog = catalog
        self.streamer = streamer
        self.notifier = notifier or NotificationManager()
        self.empty_catalog_retry_delay = empty_catalog_retry_delay
        self.stop_on_failure = stop_on_failure

        self.started_at = datetime.now(timezone.utc)
        self._continue_lock = threading.Lock()
        self._should_continue = True

    def should_continue(self) -> bool:
        with self._continue_lock:
            return self._should_continue

    def set_continue(self, value: bool):
        with self._continue_lock:
            self._should_continue = value
        logger.info(f"Continue flag set to {value}")

    def uptime(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()

    async def run(self):
        """
        Loop until the continue flag is cleared.

        Raises:
            PipelineError, StreamOpenError: when stop_on_failure is set
        """
        logger.info("Broadcast loop started")
        while True:
            await self.run_cycle()
            if not self.should_continue():
                logger.info("Continue flag is off, stopping broadcast loop")
                break
        await self.notifier.drain(timeout=5.0)

    async def run_cycle(self) -> bool:
        """Play one video. Returns False when the cycle was skipped."""
        logger.info("Starting cycle")
        try:
            video, handle = await self.catalog.pick_video()
        except EmptyCatalogError as e:
            logger.warning(f"{e}; retrying in {self.empty_catalog_retry_delay}s")
            await asyncio.sleep(self.empty_catalog_retry_delay)
            return False
        except StreamOpenError as e:
            if self.stop_on_failure:
                raise
            logger.error(f"Skipping {e.key}: {e}")
            return False

        logger.info(f"Winner picked: {video}")
        self.notifier.notify(derive_title(video))

        try:
            await self.streamer.stream_video(video, handle)
        except PipelineError as e:
            if self.stop_on_failure:
                raise
            logger.error(f"Stream of {e.video} failed: {e}")
            return False

        logger.info(f"Cycle complete: {video}")
        return True
