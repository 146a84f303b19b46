"""Pytest configuration shared across the suite."""

from __future__ import annotations

import httpx
import pytest

try:
    from . import _bootstrap  # noqa: F401
    from ._fakes import FakeTokenEndpoint, free_port
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401
    from _fakes import FakeTokenEndpoint, free_port  # type: ignore

from calendar_mcp.clients.google_auth import GoogleOAuthClient
from calendar_mcp.core.config import ClientSecrets, OAuthSettings
from calendar_mcp.services.credential_store import CredentialStore
from calendar_mcp.services.token_manager import TokenManager


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO-powered tests to run against asyncio backend only."""
    return "asyncio"


@pytest.fixture
def client_secrets() -> ClientSecrets:
    return ClientSecrets(
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uris=["http://localhost/oauth2callback"],
    )


@pytest.fixture
def oauth_settings() -> OAuthSettings:
    return OAuthSettings(
        callback_host="localhost",
        callback_ports=(free_port(),),
        callback_timeout_seconds=30,
        max_exchange_attempts=3,
        http_timeout_seconds=2,
        open_browser=False,
    )


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


@pytest.fixture
def oauth_client(
    client_secrets: ClientSecrets, oauth_settings: OAuthSettings, token_endpoint: FakeTokenEndpoint
) -> GoogleOAuthClient:
    return GoogleOAuthClient(
        client_secrets, oauth_settings, transport=httpx.MockTransport(token_endpoint)
    )


@pytest.fixture
def token_path(tmp_path):
    return tmp_path / "config" / "tokens.json"


@pytest.fixture
def store(token_path) -> CredentialStore:
    return CredentialStore(token_path)


@pytest.fixture
def token_manager(store: CredentialStore, oauth_client: GoogleOAuthClient) -> TokenManager:
    return TokenManager(store, oauth_client, refresh_margin_seconds=300)
