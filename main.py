#!/usr/bin/env python3
"""
bucket-stream - Main Entry Point
Streams random videos from an S3 bucket to a live ingest endpoint, forever.
"""

import uvicorn
import argparse
import logging
import sys
import os
import asyncio
from typing import Optional

# Add the src directory to Python path so local modules in `src/` can be imported
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

# Import configs AFTER setting up the path
from config import settings, VERSION
from api import create_app
from broadcaster import Broadcaster
from catalog import VideoCatalog
from errors import BucketStreamError
from models import WebhookConfig
from notifier import NotificationManager
from object_store import S3ObjectStore
from streamer import Streamer
from twitch import TokenStore, TwitchClient

logger = logging.getLogger(__name__)


def build_twitch_client() -> TwitchClient:
    token_store = TokenStore(settings.TWITCH_TOKEN_FILE) if settings.TWITCH_TOKEN_FILE else None
    return TwitchClient(
        client_id=settings.TWITCH_CLIENT_ID,
        client_secret=settings.TWITCH_CLIENT_SECRET,
        auth_token=settings.TWITCH_AUTH_TOKEN,
        refresh_token=settings.TWITCH_REFRESH_TOKEN,
        token_store=token_store,
    )


async def twitch_auth(code: Optional[str] = None) -> int:
    """One-time authorization: print the consent URL, then trade the returned code for tokens."""
    twitch = build_twitch_client()
    try:
        url = twitch.authorize_url(settings.TWITCH_REDIRECT_URI)
        if code is None:
            print("Open this URL, approve access, then copy the 'code' parameter from the redirect:")
            print(url)
            code = (await asyncio.to_thread(input, "code: ")).strip()
        if not code:
            raise BucketStreamError("No authorization code given")

        await twitch.exchange_code(code, settings.TWITCH_REDIRECT_URI)
        if twitch.token_store is None:
            logger.warning("BUCKET_STREAM_TWITCH_TOKEN_FILE is empty, tokens were not saved")
        logger.info("✅ Twitch authorization complete")
        return 0
    finally:
        await twitch.aclose()


async def resolve_destination(twitch: TwitchClient) -> str:
    """Use the explicit RTMP URL when given, otherwise ask Twitch."""
    if settings.RTMP_URL:
        logger.info("Using explicit RTMP endpoint")
        return settings.RTMP_URL

    destination = await twitch.get_endpoint_url()
    if not destination:
        raise BucketStreamError(
            "Could not get an RTMP endpoint from BUCKET_STREAM_RTMP_URL or the Twitch API")
    return destination


async def serve() -> int:
    """Wire everything together and run until the loop stops or something fatal happens."""
    if not settings.S3_BUCKET:
        raise BucketStreamError("Video bucket name not set (BUCKET_STREAM_S3_BUCKET)")

    twitch = build_twitch_client()
    catalog = None
    try:
        await twitch.initialize()
        destination = await resolve_destination(twitch)

        store = S3ObjectStore(
            settings.S3_BUCKET,
            endpoint_url=settings.S3_ENDPOINT,
            region_name=settings.S3_REGION,
        )
        catalog = VideoCatalog(
            store,
            refresh_interval_minutes=settings.ENUMERATION_PERIOD_MINUTES,
            extension=settings.VIDEO_EXTENSION,
            name=settings.S3_BUCKET,
        )
        await catalog.start()
        logger.info(f"✅ Video storage initialized for bucket {settings.S3_BUCKET}")

        notifier = NotificationManager()
        if twitch.ready:
            notifier.add_handler(twitch.update_stream_title)
        for url in settings.NOTIFICATION_WEBHOOK_URLS:
            notifier.add_webhook(WebhookConfig(
                url=url,
                timeout=settings.WEBHOOK_TIMEOUT,
                retry_attempts=settings.WEBHOOK_RETRY_ATTEMPTS,
            ))

        streamer = Streamer(
            destination,
            ffmpeg_path=settings.FFMPEG_PATH,
            chunk_size=settings.STREAM_CHUNK_SIZE,
            terminate_timeout=settings.FFMPEG_TERMINATE_TIMEOUT,
        )
        broadcaster = Broadcaster(
            catalog,
            streamer,
            notifier,
            empty_catalog_retry_delay=settings.EMPTY_CATALOG_RETRY_DELAY,
            stop_on_failure=settings.STOP_ON_STREAM_FAILURE,
        )

        server = uvicorn.Server(uvicorn.Config(
            create_app(broadcaster),
            host=settings.HOST,
            port=settings.PORT,
            log_level=settings.LOG_LEVEL.lower(),
        ))

        broadcast_task = asyncio.create_task(broadcaster.run(), name="broadcaster")
        server_task = asyncio.create_task(server.serve(), name="http-server")
        supervised = {broadcast_task, server_task, catalog.refresh_task}

        done, _ = await asyncio.wait(supervised, return_when=asyncio.FIRST_COMPLETED)

        # Whatever finished first, bring the rest down
        server.should_exit = True
        if not broadcast_task.done():
            broadcast_task.cancel()
        await asyncio.gather(broadcast_task, server_task, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

        if broadcast_task in done:
            logger.info("Broadcast loop finished, exiting")
            return 0
        logger.warning("HTTP server stopped, exiting")
        return 0
    finally:
        if catalog is not None:
            await catalog.stop()
        await twitch.aclose()


def main():
    """Main function to start bucket-stream."""
    parser = argparse.ArgumentParser(description="Stream random videos from a bucket")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Run the stream (default)")
    auth_parser = subparsers.add_parser(
        "twitch-auth", help="Authorize the Twitch app and store the first token pair")
    auth_parser.add_argument("--code", help="Authorization code from the redirect URL")
    args = parser.parse_args()

    # Try to use uvloop for better async performance
    try:
        import uvloop
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        use_uvloop = True
    except ImportError:
        use_uvloop = False

    # Configure logging
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger.info("="*60)
    logger.info(
        f"⚡️ Starting bucket-stream v{VERSION} (control surface on {settings.HOST}:{settings.PORT})")
    logger.info("="*60)
    logger.info(f"ℹ️  Log level set to: {settings.LOG_LEVEL}")
    logger.info(f"ℹ️  FFmpeg path: {settings.FFMPEG_PATH}")
    if use_uvloop:
        logger.info("✅ Using uvloop for optimized async I/O performance")
    else:
        logger.info(
            "✅ Using standard asyncio (install uvloop for better performance)")

    try:
        if args.command == "twitch-auth":
            exit_code = asyncio.run(twitch_auth(args.code))
        else:
            exit_code = asyncio.run(serve())
    except BucketStreamError as e:
        logger.critical(f"❌ Fatal: {e}")
        exit_code = 1
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        exit_code = 0

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
