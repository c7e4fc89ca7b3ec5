"""
Exception hierarchy shared by the catalog, the streamer and the main loop.
"""


class BucketStreamError(Exception):
    """Base class for all bucket-stream errors."""


class CatalogUnavailableError(BucketStreamError):
    """Listing the bucket failed; no new catalog could be built."""


class EmptyCatalogError(BucketStreamError):
    """A pick was attempted while the catalog holds no videos."""


class StreamOpenError(BucketStreamError):
    """The chosen video could not be opened for reading."""

    def __init__(self, key: str, message: str):
        super().__init__(message)
        self.key = key


class PipelineError(BucketStreamError):
    """Base class for failures while remuxing a video with FFmpeg."""

    def __init__(self, video: str, message: str):
        super().__init__(message)
        self.video = video


class FfmpegStartError(PipelineError):
    """FFmpeg could not be launched or its stderr pipe is missing."""


class FfmpegExitError(PipelineError):
    """FFmpeg exited with a non-zero status."""

    def __init__(self, video: str, returncode: int):
        super().__init__(video, f"FFmpeg exited with code {returncode} while streaming {video}")
        self.returncode = returncode


class StreamCloseError(PipelineError):
    """The object-store stream could not be closed after FFmpeg exited."""


class TwitchError(BucketStreamError):
    """A Twitch API call failed."""
