import pytest
import asyncio
import io
import shutil
import subprocess

# Add src to path
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from broadcaster import Broadcaster
from catalog import VideoCatalog
from errors import FfmpegExitError, FfmpegStartError
from notifier import NotificationManager
from object_store import ObjectListing, StreamHandle
from streamer import Streamer

FFMPEG = shutil.which("ffmpeg")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(FFMPEG is None, reason="ffmpeg not installed"),
]


@pytest.fixture(scope="module")
def flv_bytes(tmp_path_factory):
    """A one second test pattern encoded as FLV"""
    path = tmp_path_factory.mktemp("media") / "pattern.flv"
    subprocess.run(
        [FFMPEG, "-y", "-loglevel", "error",
         "-f", "lavfi", "-i", "testsrc=duration=1:size=64x64:rate=10",
         "-c:v", "flv1", "-f", "flv", str(path)],
        check=True,
    )
    return path.read_bytes()


class MemoryStore:
    def __init__(self, objects):
        self.objects = objects

    async def list_objects(self, continuation_token=None):
        return ObjectListing(keys=list(self.objects), next_token=None, is_truncated=False)

    async def open_object_stream(self, key):
        return StreamHandle(key, io.BytesIO(self.objects[key]))


class TestFullPipeline:
    """Real FFmpeg remuxing into a local FLV file in place of an RTMP server"""

    @pytest.mark.asyncio
    async def test_one_cycle_end_to_end(self, flv_bytes, tmp_path):
        destination = tmp_path / "out.flv"
        catalog = VideoCatalog(MemoryStore({"shows/Test Pattern.flv": flv_bytes}))
        await catalog.refresh()
        streamer = Streamer(str(destination), ffmpeg_path=FFMPEG, chunk_size=4096)
        notifier = NotificationManager()
        titles = []
        notifier.add_handler(titles.append)
        broadcaster = Broadcaster(catalog, streamer, notifier)
        broadcaster.set_continue(False)

        await asyncio.wait_for(broadcaster.run(), timeout=30)

        assert titles == ["Test Pattern"]
        assert streamer.play_count() == 1
        assert destination.exists()
        assert destination.read_bytes()[:3] == b"FLV"

    @pytest.mark.asyncio
    async def test_garbage_input_fails_the_pipeline(self, tmp_path):
        streamer = Streamer(str(tmp_path / "out.flv"), ffmpeg_path=FFMPEG)
        handle = StreamHandle("junk.flv", io.BytesIO(b"this is not a video" * 100))

        with pytest.raises(FfmpegExitError):
            await asyncio.wait_for(streamer.stream_video("junk.flv", handle), timeout=30)
        assert handle.closed

    @pytest.mark.asyncio
    async def test_missing_binary_fails_to_start(self, tmp_path):
        streamer = Streamer(str(tmp_path / "out.flv"), ffmpeg_path=str(tmp_path / "no-ffmpeg"))
        handle = StreamHandle("a.flv", io.BytesIO(b""))

        with pytest.raises(FfmpegStartError):
            await streamer.stream_video("a.flv", handle)
        assert handle.closed
