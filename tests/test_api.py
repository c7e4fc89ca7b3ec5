"""
Tests for the HTTP control surface and API token authentication
"""
import pytest
import sys
import os
from unittest.mock import AsyncMock, Mock, patch
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import api
from api import create_app
from broadcaster import Broadcaster
from catalog import CatalogSnapshot
from errors import CatalogUnavailableError
from notifier import NotificationManager
from streamer import Streamer


@pytest.fixture
def broadcaster():
    catalog = Mock()
    catalog.count.return_value = 3
    catalog.snapshot = CatalogSnapshot(videos=("a.flv", "b.flv", "c.flv"))
    catalog.refresh_task = None
    catalog.force_refresh = AsyncMock(return_value=5)
    streamer = Streamer("rtmp://ingest.example/app/key")
    return Broadcaster(catalog, streamer, NotificationManager())


@pytest.fixture
def client(broadcaster):
    with patch.object(api.settings, "API_TOKEN", None):
        yield TestClient(create_app(broadcaster))


@pytest.fixture
def client_with_auth(broadcaster):
    with patch.object(api.settings, "API_TOKEN", "test_token_123"):
        yield TestClient(create_app(broadcaster))


class TestAuthentication:
    """Test API token authentication"""

    def test_protected_endpoint_without_token_when_auth_enabled(self, client_with_auth):
        response = client_with_auth.get("/stats")
        assert response.status_code == 401
        assert "API token required" in response.json()["detail"]

    def test_protected_endpoint_with_invalid_token(self, client_with_auth):
        response = client_with_auth.get("/stats", headers={"X-API-Token": "wrong_token"})
        assert response.status_code == 403
        assert "Invalid API token" in response.json()["detail"]

    def test_token_in_header(self, client_with_auth):
        response = client_with_auth.get("/stats", headers={"X-API-Token": "test_token_123"})
        assert response.status_code == 200

    def test_token_in_query_parameter(self, client_with_auth):
        response = client_with_auth.get("/stats?api_token=test_token_123")
        assert response.status_code == 200

    def test_ping_is_public(self, client_with_auth):
        response = client_with_auth.get("/ping")
        assert response.status_code == 200
        assert response.json() == {"message": "ok"}

    def test_all_control_endpoints_require_token(self, client_with_auth):
        protected_endpoints = [
            ("/stats", "GET"),
            ("/health", "GET"),
            ("/continue/yes", "PUT"),
            ("/continue/no", "PUT"),
            ("/enumerate", "POST"),
            ("/webhooks", "GET"),
        ]
        for path, method in protected_endpoints:
            response = client_with_auth.request(method, path)
            assert response.status_code == 401, f"{method} {path} should require a token"

    def test_no_auth_when_token_unset(self, client):
        assert client.get("/stats").status_code == 200


class TestStats:
    def test_idle_stats(self, client):
        data = client.get("/stats").json()

        assert data["video_count"] == 3
        assert data["should_continue"] is True
        assert data["currently_playing"] is None
        assert data["time_since_video_start"] is None
        assert data["videos_played"] == 0
        assert data["uptime_seconds"] >= 0

    def test_stats_while_playing(self, client, broadcaster):
        broadcaster.streamer._begin("shows/Pilot.flv")

        data = client.get("/stats").json()

        assert data["currently_playing"] == "shows/Pilot.flv"
        assert data["time_since_video_start"] >= 0
        assert data["videos_played"] == 1


class TestContinue:
    def test_continue_no_then_yes(self, client, broadcaster):
        response = client.put("/continue/no")
        assert response.status_code == 200
        assert response.json()["should_continue"] is False
        assert broadcaster.should_continue() is False
        assert client.get("/stats").json()["should_continue"] is False

        response = client.put("/continue/yes")
        assert response.json()["should_continue"] is True
        assert broadcaster.should_continue() is True

    def test_get_is_not_allowed(self, client):
        assert client.get("/continue/no").status_code == 405


class TestEnumerate:
    def test_forced_refresh_returns_count(self, client, broadcaster):
        response = client.post("/enumerate")

        assert response.status_code == 200
        assert response.json()["video_count"] == 5
        broadcaster.catalog.force_refresh.assert_awaited_once()

    def test_refresh_failure_is_503(self, client, broadcaster):
        broadcaster.catalog.force_refresh.side_effect = CatalogUnavailableError("bucket gone")

        response = client.post("/enumerate")

        assert response.status_code == 503
        assert "bucket gone" in response.json()["detail"]


class TestHealth:
    def test_healthy_with_videos(self, client):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["version"] == api.VERSION
        assert data["dependencies"]["catalog_refresh"] == "stopped"

    def test_degraded_when_empty(self, client, broadcaster):
        broadcaster.catalog.count.return_value = 0

        assert client.get("/health").json()["status"] == "degraded"


class TestWebhooks:
    def test_add_list_remove(self, client, broadcaster):
        response = client.post("/webhooks", json={"url": "http://example.com/hook", "timeout": 5})
        assert response.status_code == 200
        assert response.json()["webhook_url"] == "http://example.com/hook"

        webhooks = client.get("/webhooks").json()["webhooks"]
        assert webhooks == [{"url": "http://example.com/hook", "timeout": 5, "retry_attempts": 3}]

        response = client.delete("/webhooks", params={"webhook_url": "http://example.com/hook"})
        assert response.status_code == 200
        assert broadcaster.notifier.webhooks == []

    def test_remove_unknown(self, client):
        response = client.delete("/webhooks", params={"webhook_url": "http://nope.example.com/"})
        assert response.status_code == 404

    def test_invalid_webhook_rejected(self, client):
        response = client.post("/webhooks", json={"url": "not a url"})
        assert response.status_code == 422

    def test_send_test_title(self, client, broadcaster):
        client.post("/webhooks", json={"url": "http://example.com/hook"})
        broadcaster.streamer._begin("shows/Pilot.flv")

        with patch.object(broadcaster.notifier, "send_webhook",
                          AsyncMock(return_value=True)) as send:
            response = client.post("/webhooks/test", params={"webhook_url": "http://example.com/hook"})

        assert response.status_code == 200
        assert response.json()["delivered"] is True
        event = send.await_args.args[1]
        assert event.name == "Pilot"

    def test_test_unknown_webhook(self, client):
        response = client.post("/webhooks/test", params={"webhook_url": "http://example.com/hook"})
        assert response.status_code == 404
