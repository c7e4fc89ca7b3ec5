"""
FFmpeg Streamer

Remuxes one video at a time into a live FLV/RTMP destination. The video
bytes come from an object-store StreamHandle and are written to FFmpeg's
stdin; FFmpeg copies the codecs unchanged and paces itself in real time,
so a call to stream_video() lasts as long as the video does.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from errors import FfmpegExitError, FfmpegStartError, PipelineError, StreamCloseError
from object_store import StreamHandle

logger = logging.getLogger(__name__)

# FFmpeg stderr lines can be long (codec dumps); raise asyncio's 64 KiB default
STDERR_LINE_LIMIT = 1024 * 1024


def build_ffmpeg_command(ffmpeg_path: str, destination: str) -> List[str]:
    """Build the remux command line: stdin in, FLV out, no re-encoding."""
    return [
        ffmpeg_path,
        "-loglevel", "warning",   # only log warnings
        "-hide_banner",           # no codec/build banner
        "-re",                    # real-time pacing
        "-i", "-",                # read from stdin
        "-c", "copy",             # don't actually encode
        "-f", "flv",
        "-flvflags", "no_duration_filesize",
        destination,
    ]


@dataclass(frozen=True)
class NowPlaying:
    """Playback state, replaced as a whole when a new video starts."""
    video: Optional[str] = None
    started_at: Optional[datetime] = None
    play_count: int = 0

    def elapsed(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.started_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (now - self.started_at).total_seconds()


@dataclass
class StreamResult:
    video: str
    returncode: int
    bytes_sent: int
    duration: float


ProcessFactory = Callable[..., Awaitable[asyncio.subprocess.Process]]


class Streamer:
    def __init__(self,
                 destination: str,
                 ffmpeg_path: str = "ffmpeg",
                 chunk_size: int = 65536,
                 terminate_timeout: float = 5.0,
                 process_factory: Optional[ProcessFactory] = None):
        self.destination = destination
        self.ffmpeg_path = ffmpeg_path
        self.chunk_size = chunk_size
        self.terminate_timeout = terminate_timeout
        self._spawn = process_factory or asyncio.create_subprocess_exec

        self._lock = threading.Lock()
        self._state = NowPlaying()

    # ------------------------------------------------------------------
    # Read-only status
    # ------------------------------------------------------------------

    def status(self) -> NowPlaying:
        with self._lock:
            return self._state

    def current_video(self) -> Optional[str]:
        return self.status().video

    def elapsed(self) -> Optional[float]:
        return self.status().elapsed()

    def play_count(self) -> int:
        return self.status().play_count

    def _begin(self, video: str):
        with self._lock:
            self._state = NowPlaying(
                video=video,
                started_at=datetime.now(timezone.utc),
                play_count=self._state.play_count + 1,
            )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream_video(self, video: str, handle: StreamHandle,
                           destination: Optional[str] = None) -> StreamResult:
        """
        Stream one video to the destination and wait until it is done.

        Returns once FFmpeg has exited, its stderr has been drained and the
        handle has been closed. The handle is closed on every path, and only
        after FFmpeg is gone.

        Raises:
            FfmpegStartError: FFmpeg could not be started
            FfmpegExitError: FFmpeg exited with a non-zero status
            PipelineError: the video could not be read from the store
            StreamCloseError: the handle could not be closed
        """
        self._begin(video)
        command = build_ffmpeg_command(self.ffmpeg_path, destination or self.destination)
        started = time.monotonic()
        logger.info(f"Beginning stream of {video}")

        try:
            returncode, bytes_sent = await self._run_ffmpeg(video, handle, command)
        except BaseException:
            # Start failure, cancellation or anything else: FFmpeg is gone by now
            await self._close_quietly(video, handle)
            raise

        await self._close_input(video, handle)

        if returncode != 0:
            raise FfmpegExitError(video, returncode)

        duration = time.monotonic() - started
        logger.info(f"Stream of {video} finished ({bytes_sent} bytes in {duration:.1f}s)")
        return StreamResult(video=video, returncode=returncode,
                            bytes_sent=bytes_sent, duration=duration)

    async def _run_ffmpeg(self, video: str, handle: StreamHandle, command: List[str]):
        logger.debug(f"FFmpeg command: {' '.join(command[:-1])} <destination>")
        try:
            process = await self._spawn(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                limit=STDERR_LINE_LIMIT,
            )
        except (OSError, ValueError) as e:
            raise FfmpegStartError(video, f"Error starting FFmpeg for {video}: {e}") from e

        if process.stderr is None or process.stdin is None:
            await self._terminate(video, process)
            raise FfmpegStartError(video, f"Error opening FFmpeg pipes for {video}")

        logger.info(f"FFmpeg started with PID {process.pid} for {video}")

        capture_task = asyncio.create_task(self._capture_output(video, process))
        feed_task = asyncio.create_task(self._feed_input(video, handle, process))
        try:
            returncode = await process.wait()
            logger.info(f"FFmpeg exited with code {returncode} for {video}")
            # Both helpers see end-of-stream once the process is gone
            bytes_sent = await feed_task
            await capture_task
        except BaseException:
            await self._terminate(video, process)
            for task in (feed_task, capture_task):
                task.cancel()
            await asyncio.gather(feed_task, capture_task, return_exceptions=True)
            raise

        return returncode, bytes_sent

    async def _feed_input(self, video: str, handle: StreamHandle, process) -> int:
        """Copy the object stream into FFmpeg's stdin until either side ends."""
        sent = 0
        try:
            while True:
                try:
                    chunk = await handle.read(self.chunk_size)
                except Exception as e:
                    raise PipelineError(
                        video, f"Error reading {video} after {sent} bytes: {e}") from e
                if not chunk:
                    break
                process.stdin.write(chunk)
                await process.stdin.drain()
                sent += len(chunk)
        except (BrokenPipeError, ConnectionResetError):
            logger.warning(f"FFmpeg stopped reading input for {video} after {sent} bytes")
        finally:
            try:
                process.stdin.close()
                await process.stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass
        return sent

    async def _capture_output(self, video: str, process):
        """Log every non-empty FFmpeg stderr line as a warning until EOF."""
        while True:
            try:
                line = await process.stderr.readline()
            except (ValueError, asyncio.LimitOverrunError) as e:
                # The reader has already discarded the oversized line
                logger.warning(f"FFmpeg [{video}]: dropped oversized stderr line ({e})")
                continue
            if not line:
                break
            line_str = line.decode('utf-8', errors='ignore').strip()
            if line_str:
                logger.warning(f"FFmpeg [{video}]: {line_str}")

    async def _terminate(self, video: str, process):
        if process.returncode is not None:
            return
        logger.info(f"Terminating FFmpeg process for {video}")
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"FFmpeg process for {video} didn't terminate cleanly, killing it")
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass

    async def _close_input(self, video: str, handle: StreamHandle):
        try:
            await handle.close()
        except Exception as e:
            raise StreamCloseError(video, f"Error closing video input for {video}: {e}") from e
        logger.info(f"Closed video input stream for {video}")

    async def _close_quietly(self, video: str, handle: StreamHandle):
        """Close after a failure; the first error is the one that matters."""
        try:
            await self._close_input(video, handle)
        except StreamCloseError as e:
            logger.error(str(e))
