from pydantic import BaseModel, Field, HttpUrl
from typing import Dict, Optional
from datetime import datetime, timezone


class TitleEvent(BaseModel):
    """Webhook payload announcing the title now playing."""
    name: str


class WebhookConfig(BaseModel):
    url: HttpUrl
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=3, ge=0)


class MessageResponse(BaseModel):
    message: str = "ok"


class EnumerateResponse(MessageResponse):
    video_count: int


class ContinueResponse(MessageResponse):
    should_continue: bool


class StreamStats(BaseModel):
    uptime_seconds: float
    should_continue: bool
    video_count: int
    catalog_refreshed_at: Optional[datetime] = None
    currently_playing: Optional[str] = None
    time_since_video_start: Optional[float] = None  # seconds
    videos_played: int = 0


class HealthCheck(BaseModel):
    status: str
    version: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    dependencies: Dict[str, str] = Field(default_factory=dict)


class TwitchTokens(BaseModel):
    """Access/refresh token pair as persisted between runs."""
    access_token: str
    refresh_token: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
