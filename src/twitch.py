"""
Twitch API Client

Resolves the RTMP ingest URL (closest ingest + stream key) and keeps the
channel title in sync with the video being played. The OAuth access token
is validated before every Helix call and refreshed with the refresh token
when Twitch no longer accepts it. New token pairs are written to a
TokenStore so a restart picks up where the last run left off.
"""

import httpx
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union
from urllib.parse import urlencode

from pydantic import ValidationError

from errors import TwitchError
from models import TwitchTokens

logger = logging.getLogger(__name__)

OAUTH_URL = "https://id.twitch.tv/oauth2"
HELIX_URL = "https://api.twitch.tv/helix"
INGEST_URL = "https://ingest.twitch.tv/ingests"

DEFAULT_REDIRECT_URI = "http://localhost"
# Read the stream key, edit the channel title
SCOPES = ("channel:read:stream_key", "user:edit:broadcast")


class TokenStore:
    """JSON file holding the latest access/refresh token pair."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[TwitchTokens]:
        if not self.path.exists():
            return None
        try:
            return TwitchTokens.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable Twitch token file {self.path}: {e}")
            return None

    def save(self, tokens: TwitchTokens):
        """Write the pair atomically, readable by the owner only."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(tokens.model_dump_json(indent=2))
        os.replace(tmp_path, self.path)

class TwitchClient:
    def __init__(self,
                 client_id: Optional[str] = None,
                 client_secret: Optional[str] = None,
                 auth_token: Optional[str] = None,
                 refresh_token: Optional[str] = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 token_store: Optional[TokenStore] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.auth_token = auth_token
        self.refresh_token = refresh_token
        self.broadcaster_id: Optional[int] = None
        self.http_client = http_client or httpx.AsyncClient(timeout=10.0)
        self.token_store = token_store

        # Tokens from a previous run are newer than the configured ones
        stored = token_store.load() if token_store else None
        if stored:
            logger.info(f"Using Twitch tokens from {token_store.path}")
            self.auth_token = stored.access_token
            self.refresh_token = stored.refresh_token or self.refresh_token

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.auth_token)

    @property
    def ready(self) -> bool:
        return self.configured and self.broadcaster_id is not None

    async def aclose(self):
        await self.http_client.aclose()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def validate_token(self) -> bool:
        response = await self.http_client.get(
            f"{OAUTH_URL}/validate",
            headers={"Authorization": f"OAuth {self.auth_token}"})
        return response.status_code == 200

    async def refresh_tokens(self):
        """Trade the refresh token for a new access/refresh token pair."""
        logger.info("Refreshing Twitch tokens")
        if not (self.refresh_token and self.client_secret):
            raise TwitchError("Twitch token expired and no refresh credentials are configured")

        response = await self.http_client.post(
            f"{OAUTH_URL}/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            })
        if response.status_code != 200:
            raise TwitchError(f"Twitch token refresh failed with status {response.status_code}")

        self._update_tokens(response.json())
        logger.info("Twitch tokens updated")

    def authorize_url(self, redirect_uri: str = DEFAULT_REDIRECT_URI) -> str:
        """URL the channel owner opens once to grant this app access."""
        if not self.client_id:
            raise TwitchError("Twitch client id not set")
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
        })
        return f"{OAUTH_URL}/authorize?{query}"

    async def exchange_code(self, code: str, redirect_uri: str = DEFAULT_REDIRECT_URI) -> TwitchTokens:
        """
        Trade the authorization code from the redirect for the first token pair.

        Raises:
            TwitchError: when Twitch rejects the code or cannot be reached
        """
        if not (self.client_id and self.client_secret):
            raise TwitchError("Twitch client id and secret are required for the code exchange")

        logger.info("Exchanging Twitch authorization code")
        try:
            response = await self.http_client.post(
                f"{OAUTH_URL}/token",
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": redirect_uri,
                })
        except httpx.HTTPError as e:
            raise TwitchError(f"Error exchanging Twitch authorization code: {e}") from e

        if response.status_code != 200:
            raise TwitchError(
                f"Twitch code exchange failed with status {response.status_code}: {response.text}")
        return self._update_tokens(response.json())

    def _update_tokens(self, payload: Dict[str, Any]) -> TwitchTokens:
        tokens = TwitchTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token", self.refresh_token),
        )
        self.auth_token = tokens.access_token
        self.refresh_token = tokens.refresh_token

        if self.token_store is None:
            logger.warning("No Twitch token file configured, new tokens are kept in memory only")
            return tokens
        try:
            self.token_store.save(tokens)
        except OSError as e:
            logger.warning(f"Could not write Twitch tokens to {self.token_store.path}: {e}")
        else:
            logger.info(f"Updated Twitch credentials written to {self.token_store.path}")
        return tokens

    async def _request(self, method: str, url: str, **kwargs) -> Optional[Dict[str, Any]]:
        """
        Perform an authenticated Twitch request and decode the JSON body.

        Returns None for 204 No Content.

        Raises:
            TwitchError: on transport errors or non-2xx responses
        """
        try:
            if not await self.validate_token():
                await self.refresh_tokens()

            headers = {
                "Client-Id": self.client_id,
                "Authorization": f"Bearer {self.auth_token}",
            }
            response = await self.http_client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise TwitchError(f"Error making Twitch request to {url}: {e}") from e

        if response.status_code == 204:
            return None
        if response.status_code != 200:
            raise TwitchError(
                f"Twitch request to {url} failed with status {response.status_code}: {response.text}")
        return response.json()

    # ------------------------------------------------------------------
    # Helix
    # ------------------------------------------------------------------

    async def initialize(self) -> Optional[int]:
        """Look up the broadcaster id of the user owning the access token."""
        if not self.configured:
            logger.warning("Twitch API config not set...skipping getting user info")
            return None

        logger.info("Getting Twitch user id")
        payload = await self._request("GET", f"{HELIX_URL}/users")
        users = (payload or {}).get("data") or []
        if not users:
            raise TwitchError("Twitch returned no user for the configured token")

        self.broadcaster_id = int(users[0]["id"])
        logger.info(
            f"Set Twitch broadcaster id {self.broadcaster_id} ({users[0].get('display_name')})")
        return self.broadcaster_id

    async def get_ingest_template(self) -> Optional[str]:
        """Return the URL template of the closest ingest server."""
        if not self.ready:
            logger.warning("Twitch API config not set...no ingest endpoint")
            return None

        logger.info("Starting lookup of Twitch ingestion endpoints")
        payload = await self._request("GET", INGEST_URL)
        ingests = (payload or {}).get("ingests") or []
        if not ingests:
            raise TwitchError("Twitch returned no ingest endpoints")

        logger.info(f"Found {len(ingests)} endpoints, picked {ingests[0].get('name')}")
        return ingests[0]["url_template"]

    async def get_stream_key(self) -> Optional[str]:
        if not self.ready:
            logger.warning("Twitch API config not set...no stream key")
            return None

        payload = await self._request(
            "GET", f"{HELIX_URL}/streams/key", params={"broadcaster_id": self.broadcaster_id})
        keys = (payload or {}).get("data") or []
        if not keys:
            raise TwitchError("Twitch returned no stream key")

        logger.info("Retrieved Twitch stream key")
        return keys[0]["stream_key"]

    async def get_endpoint_url(self) -> Optional[str]:
        """Return a complete RTMP endpoint URL with the stream key embedded."""
        template = await self.get_ingest_template()
        if not template:
            return None
        stream_key = await self.get_stream_key()
        if not stream_key:
            return None

        logger.info("Built full Twitch endpoint url")
        return template.replace("{stream_key}", stream_key, 1)

    async def update_stream_title(self, title: str):
        """Set the channel title. Failures are logged, never raised."""
        if not self.ready:
            logger.warning(f"Twitch API config not set...skipping title update for {title}")
            return

        try:
            await self._request(
                "PATCH", f"{HELIX_URL}/channels",
                params={"broadcaster_id": self.broadcaster_id},
                json={"title": title})
        except TwitchError as e:
            logger.warning(f"Could not update Twitch title to '{title}': {e}")
            return
        logger.info(f"Updated Twitch stream title to '{title}'")
