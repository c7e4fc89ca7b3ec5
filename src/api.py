from fastapi import FastAPI, HTTPException, Query, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
from typing import Optional

from broadcaster import Broadcaster, derive_title
from config import settings, VERSION
from errors import CatalogUnavailableError
from models import (
    ContinueResponse,
    EnumerateResponse,
    HealthCheck,
    MessageResponse,
    StreamStats,
    TitleEvent,
    WebhookConfig,
)

logger = logging.getLogger(__name__)


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set in environment, authentication is disabled.
    """
    # If no API token is configured, skip authentication
    if not settings.API_TOKEN:
        return True

    # Check for token in either header or query parameter
    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


def create_app(broadcaster: Broadcaster) -> FastAPI:
    """Build the control surface around a running broadcaster."""

    catalog = broadcaster.catalog
    streamer = broadcaster.streamer
    notifier = broadcaster.notifier

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("bucket-stream control surface starting up...")
        yield
        logger.info("bucket-stream control surface shutting down...")

    app = FastAPI(
        title="bucket-stream",
        version=VERSION,
        description="Streams random videos from a bucket to a live ingest endpoint",
        lifespan=lifespan,
        docs_url=settings.DOCS_URL,
        redoc_url=settings.REDOC_URL,
        openapi_url=settings.OPENAPI_URL,
    )
    app.state.broadcaster = broadcaster

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/ping", response_model=MessageResponse)
    async def ping():
        return MessageResponse()

    @app.get("/stats", response_model=StreamStats, dependencies=[Depends(verify_token)])
    async def get_stats():
        """Now playing, play count and catalog size"""
        now_playing = streamer.status()
        return StreamStats(
            uptime_seconds=broadcaster.uptime(),
            should_continue=broadcaster.should_continue(),
            video_count=catalog.count(),
            catalog_refreshed_at=catalog.snapshot.refreshed_at,
            currently_playing=now_playing.video,
            time_since_video_start=now_playing.elapsed(),
            videos_played=now_playing.play_count,
        )

    @app.put("/continue/yes", response_model=ContinueResponse, dependencies=[Depends(verify_token)])
    async def continue_yes():
        broadcaster.set_continue(True)
        return ContinueResponse(should_continue=True)

    @app.put("/continue/no", response_model=ContinueResponse, dependencies=[Depends(verify_token)])
    async def continue_no():
        """Stop after the current video finishes"""
        broadcaster.set_continue(False)
        return ContinueResponse(should_continue=False)

    @app.post("/enumerate", response_model=EnumerateResponse, dependencies=[Depends(verify_token)])
    async def enumerate_videos():
        """Re-list the bucket now instead of waiting for the next refresh"""
        try:
            count = await catalog.force_refresh()
        except CatalogUnavailableError as e:
            logger.error(f"Forced enumeration failed: {e}")
            raise HTTPException(status_code=503, detail=str(e))
        return EnumerateResponse(video_count=count)

    @app.get("/health", response_model=HealthCheck, dependencies=[Depends(verify_token)])
    async def health_check():
        refresh_task = catalog.refresh_task
        refresher = "running" if refresh_task and not refresh_task.done() else "stopped"
        return HealthCheck(
            status="healthy" if catalog.count() > 0 else "degraded",
            version=VERSION,
            dependencies={"catalog_refresh": refresher},
        )

    # Webhook Management Endpoints

    @app.post("/webhooks", dependencies=[Depends(verify_token)])
    async def add_webhook(webhook: WebhookConfig):
        """Add a new title webhook"""
        notifier.add_webhook(webhook)
        return {
            "message": "Webhook added successfully",
            "webhook_url": str(webhook.url),
        }

    @app.get("/webhooks", dependencies=[Depends(verify_token)])
    async def list_webhooks():
        webhooks = [
            {
                "url": str(wh.url),
                "timeout": wh.timeout,
                "retry_attempts": wh.retry_attempts
            }
            for wh in notifier.webhooks
        ]
        return {"webhooks": webhooks}

    @app.delete("/webhooks", dependencies=[Depends(verify_token)])
    async def remove_webhook(webhook_url: str = Query(..., description="Webhook URL to remove")):
        if not notifier.remove_webhook(webhook_url):
            raise HTTPException(status_code=404, detail="Webhook not found")
        return {"message": f"Webhook {webhook_url} removed successfully"}

    @app.post("/webhooks/test", dependencies=[Depends(verify_token)])
    async def test_webhook(webhook_url: str = Query(..., description="Webhook URL to test")):
        """Send the current title (or a placeholder) to one webhook"""
        for webhook in notifier.webhooks:
            if str(webhook.url) == webhook_url:
                video = streamer.current_video()
                title = derive_title(video) if video else "bucket-stream test"
                delivered = await notifier.send_webhook(webhook, TitleEvent(name=title))
                return {"message": f"Test title sent to {webhook_url}", "delivered": delivered}

        raise HTTPException(status_code=404, detail="Webhook not found")

    return app
