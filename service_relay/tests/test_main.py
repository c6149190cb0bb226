"""
Unit tests for Relay main service.
"""

from urllib.parse import parse_qs

import httpx
import pytest
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_relay.app.main import RelayService


class FakeTelegram:
    """Mock Bot API that records every request."""

    def __init__(self):
        self.requests = []
        self.replies = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return httpx.Response(200, json=reply)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": len(self.requests)}})

    def form(self, index: int) -> dict:
        body = self.requests[index].content.decode()
        return {key: values[0] for key, values in parse_qs(body).items()}


class TestRelayService:
    """Test cases for RelayService."""

    @pytest.fixture
    def telegram(self):
        return FakeTelegram()

    @pytest.fixture
    def static_dir(self, tmp_path):
        (tmp_path / "index.html").write_text("<html><body>relay ui</body></html>")
        (tmp_path / "app.js").write_text("console.log('relay');")
        return tmp_path

    @pytest.fixture
    def service(self, telegram, static_dir):
        """Create RelayService instance."""
        return RelayService(
            telegram_transport=httpx.MockTransport(telegram.handler),
            sleep=AsyncMock(),
            static_dir=str(static_dir),
            telegram_api_base_url="https://api.example.test",
        )

    @pytest.fixture
    def client(self, service):
        """Create test client."""
        return TestClient(service.app)

    def test_health_endpoint(self, client, service):
        service.connections.upsert({"id": 1})

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "relay"
        assert data["status"] == "ok"
        assert data["connections"] == 1
        assert data["active_clients"] == 0
        assert data["blocked_clients"] == 0
        assert "X-Request-ID" in response.headers

    def test_metrics_endpoint(self, client):
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_send_message_text_json(self, client, telegram):
        response = client.post("/api/send-message", json={"token": "123:abc", "chatId": 42, "text": "hi"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "description": "", "result": {"message_id": 1}}
        assert str(telegram.requests[0].url) == "https://api.example.test/bot123:abc/sendMessage"
        assert telegram.form(0) == {"chat_id": "42", "text": "hi"}

    def test_send_message_defaults_text(self, client, telegram):
        client.post("/api/send-message", data={"token": "t", "chatId": "42"})

        assert telegram.form(0)["text"] == "Test message"

    def test_send_message_with_photo(self, client, telegram):
        response = client.post(
            "/api/send-message",
            data={"token": "t", "chatId": "42", "text": "caption here"},
            files={"photo": ("cat.png", b"png-bytes", "image/png")},
        )

        assert response.status_code == 200
        request = telegram.requests[0]
        assert str(request.url).endswith("/sendPhoto")
        assert b'filename="cat.png"' in request.content
        assert b"png-bytes" in request.content
        assert b"caption here" in request.content

    def test_send_message_provider_failure(self, client, telegram):
        telegram.replies.append({"ok": False, "description": "Forbidden: bot was blocked by the user"})

        response = client.post("/api/send-message", json={"token": "t", "chatId": 42})

        assert response.status_code == 200
        assert response.json()["ok"] is False
        assert response.json()["description"] == "Forbidden: bot was blocked by the user"

    def test_send_message_requires_target(self, client, telegram):
        response = client.post("/api/send-message", json={"text": "hi"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert telegram.requests == []

    def test_send_message_rejects_oversized_upload(self, static_dir, telegram):
        service = RelayService(
            telegram_transport=httpx.MockTransport(telegram.handler),
            static_dir=str(static_dir),
            max_upload_bytes=4,
        )
        client = TestClient(service.app)

        response = client.post(
            "/api/send-message",
            data={"token": "t", "chatId": "42"},
            files={"photo": ("big.jpg", b"0123456789", "image/jpeg")},
        )

        assert response.status_code == 413
        assert telegram.requests == []

    def test_send_bulk(self, client, telegram, service):
        telegram.replies.extend([
            {"ok": True, "result": {}},
            {"ok": False, "description": "Bad Request: message is too long"},
            {"ok": True, "result": {}},
        ])

        response = client.post("/api/send-bulk", data={"token": "t", "chatId": "42", "count": "3"})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "results": {
                "success": 2,
                "failed": 1,
                "errors": ["Message 2: Bad Request: message is too long"],
            },
        }
        assert [telegram.form(i)["text"] for i in range(3)] == ["Message 1", "Message 2", "Message 3"]
        assert service.bulk_dispatcher.sleep.await_count == 3

    def test_send_bulk_bad_count_defaults_to_one(self, client, telegram):
        response = client.post("/api/send-bulk", json={"token": "t", "chatId": 42, "count": "many"})

        assert response.json()["results"]["success"] == 1
        assert len(telegram.requests) == 1

    def test_telegram_proxy_passthrough(self, client, telegram):
        telegram.replies.append({"ok": True, "result": {"username": "relay_bot"}})

        response = client.post("/api/telegram", json={"token": "t", "endpoint": "getMe"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "result": {"username": "relay_bot"}}
        assert telegram.requests[0].method == "GET"

    def test_telegram_proxy_post_params(self, client, telegram):
        client.post(
            "/api/telegram",
            json={"token": "t", "endpoint": "sendMessage", "method": "POST", "params": {"chat_id": 1, "text": "x"}},
        )

        assert telegram.requests[0].method == "POST"
        assert telegram.form(0) == {"chat_id": "1", "text": "x"}

    def test_telegram_proxy_transport_error(self, client, telegram):
        telegram.replies.append(httpx.ConnectError("unreachable"))

        response = client.post("/api/telegram", json={"token": "t", "endpoint": "getMe"})

        assert response.status_code == 500
        assert response.json() == {"ok": False, "description": "telegram: unreachable"}

    def test_telegram_proxy_invalid_token(self, client, telegram):
        response = client.post("/api/telegram", json={"token": "bad\ntoken", "endpoint": "getMe"})

        assert response.status_code == 500
        assert response.json()["ok"] is False
        assert response.json()["description"].startswith("telegram: ")
        assert telegram.requests == []

    def test_send_bulk_invalid_token_reports_each_failure(self, client, telegram):
        response = client.post("/api/send-bulk", json={"token": "bad\ntoken", "chatId": 42, "count": 2})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["results"]["failed"] == 2
        assert len(response.json()["results"]["errors"]) == 2
        assert telegram.requests == []

    def test_connections_lifecycle(self, client):
        assert client.get("/api/connections").json() == []

        assert client.post("/api/connections", json={"id": 7, "type": "unknown"}).json() == {"success": True}
        client.post("/api/connections", json={"id": 7, "name": "Team", "type": "group"})

        connections = client.get("/api/connections").json()
        assert len(connections) == 1
        assert connections[0]["messageCount"] == 2
        assert connections[0]["type"] == "group"

        assert client.delete("/api/connections").json() == {"success": True}
        assert client.get("/api/connections").json() == []

    def test_admin_protection_status(self, client, service):
        client.get("/api/connections")
        service.block_registry.block("203.0.113.9", 60_000)

        response = client.get("/admin/protection")

        data = response.json()
        assert data["active_clients"][0]["client_id"] == "testclient"
        assert data["active_clients"][0]["request_count"] == 1
        assert data["active_clients"][0]["last_request"].endswith("Z")
        assert data["blocked_clients"][0]["client_id"] == "203.0.113.9"
        assert data["config"] == {
            "max_requests_per_minute": 100,
            "block_duration_ms": 300_000,
            "window_ms": 60_000,
        }

    def test_admin_unblock(self, client, service):
        service.block_registry.block("203.0.113.9", 60_000)

        response = client.post("/admin/unblock-ip", json={"ip": "203.0.113.9"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["was_blocked"] is True
        assert service.block_registry.is_blocked("203.0.113.9") is False

    def test_admin_unblock_requires_ip(self, client):
        response = client.post("/admin/unblock-ip", json={})

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "IP address is required"}

    def test_root_serves_index(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert "relay ui" in response.text

    def test_static_files_and_fallback(self, client):
        assert "console.log" in client.get("/app.js").text
        assert "relay ui" in client.get("/chats/42").text

        missing = client.get("/missing.css")
        assert missing.status_code == 404
        assert missing.text == "File not found"

    def test_unknown_api_route(self, client):
        response = client.get("/api/nope")

        assert response.status_code == 404
        assert response.json() == {"error": "API endpoint not found"}

    def test_blocked_client_gets_page_on_root(self, client, service):
        service.block_registry.block("testclient", 60_000)

        response = client.get("/")

        assert response.status_code == 200
        assert "Access Temporarily Blocked" in response.text
        assert "relay ui" not in response.text

    def test_health_stays_available_when_blocked(self, client, service):
        service.block_registry.block("testclient", 60_000)

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["blocked_clients"] == 1
