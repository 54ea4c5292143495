"""
Pytest configuration and shared fixtures for backend tests.
"""
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test configuration before importing modules
os.environ["JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256-signing"
os.environ["ALLOWED_ORIGIN"] = "http://localhost:5173"
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import epg_cache
import epg_service
import session_store
import xtream_client

from tests.fixtures.mock_xtream import (  # noqa: F401 - registers fixtures
    MOCK_PASSWORD,
    MOCK_USERNAME,
    MOCK_XTREAM_ORIGIN,
    mock_xtream,
    mock_xtream_server,
)

PUBLIC_ADDRESS = "93.184.216.34"


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_singletons():
    """Give every test a fresh session store, EPG cache and HTTP client."""
    session_store.reset_session_store()
    epg_cache.reset_epg_cache()
    epg_service.reset_epg_service()
    xtream_client._http_client = None
    from main import api_limiter, login_limiter
    login_limiter.reset()
    api_limiter.reset()
    yield
    session_store.reset_session_store()
    epg_cache.reset_epg_cache()
    epg_service.reset_epg_service()
    xtream_client._http_client = None


@pytest.fixture(autouse=True)
def public_dns():
    """Resolve every hostname to a public address unless a test overrides it."""
    with patch("url_validator._resolve_host", AsyncMock(return_value=[PUBLIC_ADDRESS])) as resolver:
        yield resolver


@pytest.fixture(scope="function")
async def async_client():
    """
    Create an async test client for the FastAPI app.

    The lifespan is not run, so no sweep tasks are started; stores are
    created lazily through their accessors.
    """
    from httpx import AsyncClient, ASGITransport
    from main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def login_token(async_client, mock_xtream):
    """Log in against the mock server and return the bearer token."""
    response = await async_client.post(
        "/api/auth/login",
        json={"dns": "tv.example.com", "username": MOCK_USERNAME, "password": MOCK_PASSWORD},
    )
    assert response.status_code == 200, response.text
    return response.json()["token"]


@pytest.fixture
def auth_headers(login_token):
    return {"Authorization": f"Bearer {login_token}"}
