from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

# Application version
VERSION = "0.1.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    LOG_LEVEL: str = "info"
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"

    # API Authentication
    API_TOKEN: Optional[str] = None

    # FFmpeg Configuration
    FFMPEG_PATH: str = "ffmpeg"
    # Seconds to wait for FFmpeg to exit after SIGTERM before killing it
    FFMPEG_TERMINATE_TIMEOUT: float = 5.0
    # Bytes read from the object store per write to FFmpeg's stdin
    STREAM_CHUNK_SIZE: int = 65536

    # Object Storage Configuration
    S3_BUCKET: Optional[str] = None
    # Endpoint override for S3-compatible stores (MinIO, Wasabi, ...)
    S3_ENDPOINT: Optional[str] = None
    S3_REGION: Optional[str] = None
    VIDEO_EXTENSION: str = ".flv"
    ENUMERATION_PERIOD_MINUTES: int = Field(default=24 * 60, ge=1)

    # Destination. When unset the ingest URL is resolved through the Twitch API.
    RTMP_URL: Optional[str] = None

    # Notifications
    NOTIFICATION_WEBHOOK_URLS: List[str] = []
    WEBHOOK_TIMEOUT: int = 10
    WEBHOOK_RETRY_ATTEMPTS: int = 3

    # Twitch API
    TWITCH_CLIENT_ID: Optional[str] = None
    TWITCH_CLIENT_SECRET: Optional[str] = None
    TWITCH_AUTH_TOKEN: Optional[str] = None
    TWITCH_REFRESH_TOKEN: Optional[str] = None
    # Refreshed and newly authorized tokens are written here and preferred on startup
    TWITCH_TOKEN_FILE: Optional[str] = "twitch_tokens.json"
    TWITCH_REDIRECT_URI: str = "http://localhost"

    # Main loop behaviour
    EMPTY_CATALOG_RETRY_DELAY: float = 30.0
    # Treat FFmpeg and stream failures as fatal (the process exits)
    STOP_ON_STREAM_FAILURE: bool = True

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="BUCKET_STREAM_",
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
