"""
bucket-stream
Streams random videos from an S3 bucket to a live ingest endpoint through
FFmpeg, with an HTTP control surface and title notifications.
"""

__version__ = "0.1.0"
__description__ = "Random bucket-to-RTMP video streamer"
