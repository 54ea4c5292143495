"""
Integration tests for login, logout and the auth gate.

Upstream calls go to the respx mock Xtream server; hostname resolution is
patched to a public address by the autouse public_dns fixture.
"""
import json

import httpx
import pytest

from config import ProxySettings, validate_startup_settings
from errors import ConfigurationError
from session_store import get_session_store
from tests.fixtures.mock_xtream import MOCK_PASSWORD, MOCK_USERNAME, make_user_info
from tokens import issue_token


def login_body(**overrides) -> dict:
    body = {"dns": "tv.example.com", "username": MOCK_USERNAME, "password": MOCK_PASSWORD}
    body.update(overrides)
    return body


class TestLogin:
    """Tests for POST /api/auth/login."""

    @pytest.mark.asyncio
    async def test_login_success(self, async_client, mock_xtream):
        response = await async_client.post("/api/auth/login", json=login_body())

        assert response.status_code == 200
        data = response.json()
        assert data["token"]
        assert data["user"]["username"] == MOCK_USERNAME
        assert data["user"]["status"] == "Active"
        assert data["user"]["max_connections"] == "2"
        assert "password" not in data["user"]
        assert len(get_session_store()) == 1

    @pytest.mark.asyncio
    async def test_login_stores_normalized_origin(self, async_client, mock_xtream):
        await async_client.post("/api/auth/login", json=login_body(dns="  http://TV.example.com:80/path  "))

        request = mock_xtream.player_api_route.calls.last.request
        assert str(request.url).startswith("http://tv.example.com/player_api.php?")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["dns", "username", "password"])
    async def test_missing_fields(self, async_client, mock_xtream, missing):
        body = login_body()
        del body[missing]

        response = await async_client.post("/api/auth/login", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields"}
        assert mock_xtream.player_api_route.called is False

    @pytest.mark.asyncio
    async def test_empty_body(self, async_client, mock_xtream):
        response = await async_client.post("/api/auth/login")

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields"}

    @pytest.mark.asyncio
    async def test_malformed_json(self, async_client, mock_xtream):
        response = await async_client.post(
            "/api/auth/login",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields"}
        assert mock_xtream.player_api_route.called is False

    @pytest.mark.asyncio
    async def test_non_object_body(self, async_client, mock_xtream):
        response = await async_client.post("/api/auth/login", json=["tv.example.com", "bob", "secret"])

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields"}

    @pytest.mark.asyncio
    async def test_whitespace_only_credentials(self, async_client, mock_xtream):
        response = await async_client.post("/api/auth/login", json=login_body(username="   "))

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid credentials format"}

    @pytest.mark.asyncio
    async def test_private_address_rejected(self, async_client, mock_xtream):
        response = await async_client.post("/api/auth/login", json=login_body(dns="127.0.0.1"))

        assert response.status_code == 400
        assert response.json() == {"error": "Private/internal addresses not allowed"}
        assert mock_xtream.player_api_route.called is False

    @pytest.mark.asyncio
    async def test_hostname_resolving_to_private_rejected(self, async_client, mock_xtream, public_dns):
        public_dns.return_value = ["10.0.0.5"]

        response = await async_client.post("/api/auth/login", json=login_body(dns="internal.example.com"))

        assert response.status_code == 400
        assert response.json() == {"error": "Private/internal addresses not allowed"}

    @pytest.mark.asyncio
    async def test_unsupported_scheme(self, async_client, mock_xtream):
        response = await async_client.post("/api/auth/login", json=login_body(dns="ftp://tv.example.com"))

        assert response.status_code == 400
        assert response.json() == {"error": "Only HTTP/HTTPS protocols allowed"}

    @pytest.mark.asyncio
    async def test_inactive_account(self, async_client, mock_xtream):
        mock_xtream.set_user_info(make_user_info(status="Banned"))

        response = await async_client.post("/api/auth/login", json=login_body())

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid credentials"}
        assert len(get_session_store()) == 0

    @pytest.mark.asyncio
    async def test_wrong_password(self, async_client, mock_xtream):
        response = await async_client.post("/api/auth/login", json=login_body(password="wrong"))

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_upstream_unreachable(self, async_client, mock_xtream):
        mock_xtream.player_api_route.side_effect = httpx.ConnectError("connection refused")

        response = await async_client.post("/api/auth/login", json=login_body())

        assert response.status_code == 500
        assert response.json() == {"error": "Xtream API unreachable"}
        assert MOCK_PASSWORD not in response.text

    @pytest.mark.asyncio
    async def test_rate_limited_after_ten_attempts(self, async_client, mock_xtream):
        for _ in range(10):
            response = await async_client.post("/api/auth/login", json=login_body(password="wrong"))
            assert response.status_code == 401

        response = await async_client.post("/api/auth/login", json=login_body())

        assert response.status_code == 429
        assert "Retry-After" in response.headers

    @pytest.mark.asyncio
    async def test_oversized_body(self, async_client, mock_xtream):
        response = await async_client.post("/api/auth/login", json=login_body(username="a" * 11000))

        assert response.status_code == 413

    @pytest.mark.asyncio
    async def test_oversized_chunked_body(self, async_client, mock_xtream):
        payload = json.dumps(login_body(username="a" * 11000)).encode()

        async def chunks():
            for i in range(0, len(payload), 4096):
                yield payload[i:i + 4096]

        response = await async_client.post(
            "/api/auth/login",
            content=chunks(),
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 413
        assert response.json() == {"error": "Request body too large"}
        assert mock_xtream.player_api_route.called is False


class TestLogout:
    """Tests for POST /api/auth/logout."""

    @pytest.mark.asyncio
    async def test_logout_invalidates_token(self, async_client, auth_headers):
        response = await async_client.post("/api/auth/logout", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"status": "logged_out"}

        response = await async_client.get("/api/xtream/live", headers=auth_headers)

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid session"}

    @pytest.mark.asyncio
    async def test_logout_requires_token(self, async_client):
        response = await async_client.post("/api/auth/logout")
        assert response.status_code == 401


class TestAuthGate:
    """Bearer token checks shared by every proxied route."""

    @pytest.mark.asyncio
    async def test_no_token(self, async_client):
        response = await async_client.get("/api/xtream/live")

        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required"}

    @pytest.mark.asyncio
    async def test_non_bearer_header(self, async_client):
        response = await async_client.get("/api/xtream/live", headers={"Authorization": "Basic Ym9iOnNlY3JldA=="})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_garbage_token(self, async_client):
        response = await async_client.get("/api/xtream/live", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_expired_token(self, async_client, login_token):
        sid = next(iter(get_session_store()._sessions))
        expired = issue_token(sid, -10)

        response = await async_client.get("/api/xtream/live", headers={"Authorization": f"Bearer {expired}"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_valid_token_unknown_session(self, async_client):
        token = issue_token("no-such-session", 60)

        response = await async_client.get("/api/xtream/live", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401


class TestHealthAndStartup:
    @pytest.mark.asyncio
    async def test_health(self, async_client):
        response = await async_client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "xtream-session-proxy"}
        assert response.headers["x-content-type-options"] == "nosniff"

    @pytest.mark.asyncio
    async def test_cors_preflight(self, async_client):
        response = await async_client.options(
            "/api/xtream/live",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "GET",
                "Access-Control-Request-Headers": "Authorization",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"

    def test_short_secret_refused(self):
        with pytest.raises(ConfigurationError):
            validate_startup_settings(ProxySettings(jwt_secret="too-short", _env_file=None))
