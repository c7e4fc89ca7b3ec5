"""
Video Catalog

Keeps the list of playable videos found in the bucket and serves random
picks from it. The list is rebuilt in full by every refresh and published
by swapping one immutable snapshot for another, so a pick never sees a
half-built catalog.
"""

import asyncio
import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from errors import CatalogUnavailableError, EmptyCatalogError
from object_store import ObjectStore, StreamHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogSnapshot:
    videos: Tuple[str, ...] = ()
    refreshed_at: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self.videos)


class VideoCatalog:
    def __init__(self,
                 store: ObjectStore,
                 refresh_interval_minutes: int = 24 * 60,
                 extension: str = ".flv",
                 rng: Optional[random.Random] = None,
                 name: str = "bucket"):
        self.store = store
        self.refresh_interval = refresh_interval_minutes * 60
        self.extension = extension
        self.name = name
        self._rng = rng or random.Random()

        # Guards the snapshot reference only; never held across I/O
        self._lock = threading.Lock()
        self._snapshot = CatalogSnapshot()

        # Timer-driven and forced refreshes run one at a time
        self._refresh_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> CatalogSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def refresh_task(self) -> Optional[asyncio.Task]:
        return self._refresh_task

    async def start(self):
        """Load the catalog once, then keep it fresh in the background."""
        logger.info(
            f"Initializing video catalog for {self.name} (update period: {self.refresh_interval // 60} minutes)")
        await self.refresh()
        self._refresh_task = asyncio.create_task(self._periodic_refresh())

    async def stop(self):
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            except CatalogUnavailableError:
                # Already reported by whoever supervises the task
                pass
            self._refresh_task = None
        logger.info(f"Video catalog for {self.name} stopped")

    async def refresh(self) -> int:
        """
        Rebuild the catalog from a complete, paginated listing.

        Nothing is published unless every page was listed successfully.

        Returns:
            Number of videos in the new snapshot

        Raises:
            CatalogUnavailableError: if any listing call fails
        """
        async with self._refresh_lock:
            logger.info(f"Starting video enumeration of {self.name}")
            videos = []
            continuation_token = None
            while True:
                page = await self.store.list_objects(continuation_token)

                for key in page.keys:
                    if key.endswith(self.extension):
                        videos.append(key)
                    else:
                        logger.warning(
                            f"Skipping {self.name}/{key} as it is not a valid video")

                if not page.is_truncated:
                    break
                if not page.next_token:
                    raise CatalogUnavailableError(
                        f"Listing of {self.name} is truncated but carries no continuation token")
                continuation_token = page.next_token

            snapshot = CatalogSnapshot(
                videos=tuple(videos), refreshed_at=datetime.now(timezone.utc))
            with self._lock:
                self._snapshot = snapshot

            logger.info(
                f"Finished video enumeration of {self.name}: {len(snapshot)} videos")
            return len(snapshot)

    async def force_refresh(self) -> int:
        """Refresh right now, outside the timer."""
        logger.info(f"Forced refresh of {self.name} requested")
        return await self.refresh()

    def count(self) -> int:
        with self._lock:
            return len(self._snapshot)

    def choose(self) -> str:
        """Pick a video key uniformly at random from the current snapshot."""
        with self._lock:
            videos = self._snapshot.videos
            if not videos:
                raise EmptyCatalogError(f"No videos available in {self.name}")
            return videos[self._rng.randrange(len(videos))]

    async def pick_video(self) -> Tuple[str, StreamHandle]:
        """
        Choose a random video and open it for reading.

        Raises:
            EmptyCatalogError: if the catalog holds no videos
            StreamOpenError: if the chosen video cannot be opened
        """
        video = self.choose()
        handle = await self.store.open_object_stream(video)
        return video, handle

    async def _periodic_refresh(self):
        """Refresh every period for the life of the catalog. Listing failures are fatal."""
        logger.info(f"Starting update background task for {self.name}")
        while True:
            await asyncio.sleep(self.refresh_interval)
            try:
                await self.refresh()
            except CatalogUnavailableError as e:
                logger.critical(f"Periodic enumeration of {self.name} failed: {e}")
                raise
