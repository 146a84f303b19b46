try:
    from . import _bootstrap  # noqa: F401
    from ._fakes import free_port, make_record
except Exception:  # pragma: no cover
    import _bootstrap  # type: ignore # noqa: F401
    from _fakes import free_port, make_record  # type: ignore

import asyncio
import socket
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from calendar_mcp.clients.google_auth import OAuthTokenExchangeError
from calendar_mcp.services.callback_server import (
    AuthorizationCallbackServer,
    AuthorizationCancelledError,
    AuthorizationTimeoutError,
    CallbackServerError,
    CallbackState,
    NoPortAvailableError,
    bind_first_available,
)

GRANTED_TOKENS = {
    "access_token": "granted-access",
    "refresh_token": "granted-refresh",
    "expires_in": 3600,
    "scope": "https://www.googleapis.com/auth/calendar",
    "token_type": "Bearer",
}


def _oauth_state(server: AuthorizationCallbackServer) -> str:
    return parse_qs(urlparse(server.authorization_url).query)["state"][0]


def _asgi_client(server: AuthorizationCallbackServer) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=server.app), base_url="http://localhost"
    )


async def _wait_for_state(server: AuthorizationCallbackServer, state: CallbackState) -> None:
    for _ in range(200):
        if server.state is state:
            return
        await asyncio.sleep(0.02)
    raise AssertionError(f"server stayed in {server.state}, expected {state}")


def _occupy(port: int) -> socket.socket:
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("localhost", port))
    blocker.listen()
    return blocker


@pytest.fixture
async def callback_server(oauth_client, token_manager, oauth_settings):
    server = AuthorizationCallbackServer(oauth_client, token_manager, oauth_settings)
    yield server
    await server.stop()


@pytest.fixture
def make_server(oauth_client, token_manager, oauth_settings):
    created: list[AuthorizationCallbackServer] = []

    def _make(**overrides) -> AuthorizationCallbackServer:
        settings = oauth_settings.model_copy(update=overrides)
        server = AuthorizationCallbackServer(oauth_client, token_manager, settings)
        created.append(server)
        return server

    yield _make
    for server in created:
        assert not server.is_running, "test left a callback server running"


def test_bind_first_available_skips_busy_port() -> None:
    busy, free = free_port(), free_port()
    blocker = _occupy(busy)
    try:
        sock, port = bind_first_available("localhost", (busy, free))
        sock.close()
    finally:
        blocker.close()

    assert port == free


def test_bind_first_available_raises_when_every_port_is_busy() -> None:
    ports = (free_port(), free_port())
    blockers = [_occupy(port) for port in ports]
    try:
        with pytest.raises(NoPortAvailableError) as excinfo:
            bind_first_available("localhost", ports)
    finally:
        for blocker in blockers:
            blocker.close()

    assert str(ports[0]) in str(excinfo.value)
    assert str(ports[1]) in str(excinfo.value)


def test_bind_first_available_reports_other_bind_errors() -> None:
    # TEST-NET-3 is never assigned to a local interface.
    with pytest.raises(CallbackServerError) as excinfo:
        bind_first_available("203.0.113.1", (free_port(),))

    assert not isinstance(excinfo.value, NoPortAvailableError)


@pytest.mark.anyio
async def test_start_serves_redirect_to_consent_screen(callback_server, oauth_settings) -> None:
    url = await callback_server.start()

    port = oauth_settings.callback_ports[0]
    assert url == f"http://localhost:{port}/"
    assert callback_server.state is CallbackState.LISTENING
    assert callback_server.redirect_uri == f"http://localhost:{port}/oauth2callback"

    params = parse_qs(urlparse(callback_server.authorization_url).query)
    assert params["redirect_uri"] == [callback_server.redirect_uri]
    assert params["prompt"] == ["consent"]

    async with httpx.AsyncClient(trust_env=False) as client:
        response = await client.get(f"http://127.0.0.1:{port}/", follow_redirects=False)

    assert response.status_code == 307
    assert response.headers["location"] == callback_server.authorization_url


@pytest.mark.anyio
async def test_start_is_idempotent_while_listening(callback_server) -> None:
    first = await callback_server.start()
    state = _oauth_state(callback_server)

    second = await callback_server.start()

    assert first == second
    assert _oauth_state(callback_server) == state


@pytest.mark.anyio
async def test_start_falls_through_to_next_free_port(make_server) -> None:
    busy, free = free_port(), free_port()
    blocker = _occupy(busy)
    server = make_server(callback_ports=(busy, free))
    try:
        url = await server.start()
        assert server.port == free
        assert url == f"http://localhost:{free}/"
    finally:
        await server.stop()
        blocker.close()


@pytest.mark.anyio
async def test_start_without_free_port_stays_idle(make_server) -> None:
    ports = (free_port(), free_port())
    blockers = [_occupy(port) for port in ports]
    server = make_server(callback_ports=ports)
    try:
        with pytest.raises(NoPortAvailableError):
            await server.start()
    finally:
        for blocker in blockers:
            blocker.close()

    assert server.state is CallbackState.IDLE
    assert server.port is None
    assert server.url is None


@pytest.mark.anyio
async def test_stop_is_safe_before_start_and_when_repeated(callback_server) -> None:
    await callback_server.stop()
    assert callback_server.state is CallbackState.IDLE

    await callback_server.start()
    await callback_server.stop()
    await callback_server.stop()

    assert callback_server.state is CallbackState.STOPPED
    with pytest.raises(AuthorizationCancelledError):
        await callback_server.wait()


@pytest.mark.anyio
async def test_server_can_start_new_session_after_stop(callback_server) -> None:
    await callback_server.start()
    first_state = _oauth_state(callback_server)
    await callback_server.stop()

    await callback_server.start()

    assert callback_server.state is CallbackState.LISTENING
    assert _oauth_state(callback_server) != first_state


@pytest.mark.anyio
async def test_successful_callback_installs_credential_and_stops(
    callback_server, token_endpoint, token_manager, store
) -> None:
    token_endpoint.queue(200, GRANTED_TOKENS)
    await callback_server.start()

    async with _asgi_client(callback_server) as client:
        response = await client.get(
            "/oauth2callback", params={"code": "auth-code", "state": _oauth_state(callback_server)}
        )

    assert response.status_code == 200
    assert "Authentication successful" in response.text
    assert token_endpoint.requests[0]["code"] == "auth-code"
    assert token_endpoint.requests[0]["redirect_uri"] == callback_server.redirect_uri

    record = await callback_server.wait()
    assert record.access_token == "granted-access"
    assert store.load() == record
    assert token_manager.credentials == record

    await _wait_for_state(callback_server, CallbackState.STOPPED)


@pytest.mark.anyio
async def test_duplicate_callback_does_not_exchange_again(
    callback_server, token_endpoint, store
) -> None:
    token_endpoint.queue(200, GRANTED_TOKENS)
    await callback_server.start()
    params = {"code": "auth-code", "state": _oauth_state(callback_server)}

    async with _asgi_client(callback_server) as client:
        first = await client.get("/oauth2callback", params=params)
        stored = store.path.read_text(encoding="utf-8")
        second = await client.get("/oauth2callback", params=params)

    assert first.status_code == 200
    assert second.status_code == 200
    assert "Already authenticated" in second.text
    assert len(token_endpoint.requests) == 1
    assert store.path.read_text(encoding="utf-8") == stored


@pytest.mark.anyio
async def test_denied_consent_keeps_listening(callback_server, token_endpoint) -> None:
    await callback_server.start()

    async with _asgi_client(callback_server) as client:
        response = await client.get("/oauth2callback", params={"error": "access_denied"})

    assert response.status_code == 400
    assert "access_denied" in response.text
    assert callback_server.state is CallbackState.LISTENING
    assert token_endpoint.requests == []


@pytest.mark.anyio
async def test_callback_without_code_or_valid_state_is_rejected(
    callback_server, token_endpoint
) -> None:
    await callback_server.start()

    async with _asgi_client(callback_server) as client:
        missing_code = await client.get(
            "/oauth2callback", params={"state": _oauth_state(callback_server)}
        )
        forged_state = await client.get(
            "/oauth2callback", params={"code": "auth-code", "state": "forged"}
        )
        missing_state = await client.get("/oauth2callback", params={"code": "auth-code"})

    assert missing_code.status_code == 400
    assert forged_state.status_code == 400
    assert missing_state.status_code == 400
    assert token_endpoint.requests == []
    assert callback_server.state is CallbackState.LISTENING


@pytest.mark.anyio
async def test_state_from_previous_session_is_rejected(callback_server, token_endpoint) -> None:
    await callback_server.start()
    stale_state = _oauth_state(callback_server)
    await callback_server.stop()
    await callback_server.start()

    async with _asgi_client(callback_server) as client:
        response = await client.get(
            "/oauth2callback", params={"code": "auth-code", "state": stale_state}
        )

    assert response.status_code == 400
    assert token_endpoint.requests == []


@pytest.mark.anyio
async def test_failed_exchange_allows_a_new_attempt(callback_server, token_endpoint) -> None:
    token_endpoint.queue(400, {"error": "invalid_grant", "error_description": "Bad Request"})
    token_endpoint.queue(200, GRANTED_TOKENS)
    await callback_server.start()
    state = _oauth_state(callback_server)

    async with _asgi_client(callback_server) as client:
        failed = await client.get("/oauth2callback", params={"code": "first", "state": state})
        assert failed.status_code == 502
        assert callback_server.state is CallbackState.LISTENING

        retried = await client.get("/oauth2callback", params={"code": "second", "state": state})

    assert retried.status_code == 200
    assert (await callback_server.wait()).access_token == "granted-access"


@pytest.mark.anyio
async def test_repeated_exchange_failures_end_the_session(make_server, token_endpoint) -> None:
    server = make_server(max_exchange_attempts=2)
    for _ in range(2):
        token_endpoint.queue(400, {"error": "invalid_grant"})
    await server.start()
    state = _oauth_state(server)

    try:
        async with _asgi_client(server) as client:
            for code in ("first", "second"):
                response = await client.get(
                    "/oauth2callback", params={"code": code, "state": state}
                )
                assert response.status_code == 502

            with pytest.raises(OAuthTokenExchangeError):
                await server.wait()

            await _wait_for_state(server, CallbackState.STOPPED)
            closed = await client.get("/oauth2callback", params={"code": "third", "state": state})
    finally:
        await server.stop()

    assert closed.status_code == 410
    assert len(token_endpoint.requests) == 2


@pytest.mark.anyio
async def test_session_times_out_without_callback(make_server) -> None:
    server = make_server(callback_timeout_seconds=0.1)
    await server.start()

    try:
        with pytest.raises(AuthorizationTimeoutError):
            await asyncio.wait_for(server.wait(), timeout=5)
        await _wait_for_state(server, CallbackState.STOPPED)
    finally:
        await server.stop()


@pytest.mark.anyio
async def test_root_is_unavailable_when_not_listening(callback_server) -> None:
    async with _asgi_client(callback_server) as client:
        response = await client.get("/", follow_redirects=False)

    assert response.status_code == 503


@pytest.mark.anyio
async def test_consent_prompt_skipped_when_refresh_token_is_held(
    callback_server, token_manager
) -> None:
    token_manager.install(make_record(-10))

    await callback_server.start()

    params = parse_qs(urlparse(callback_server.authorization_url).query)
    assert "prompt" not in params
    assert params["access_type"] == ["offline"]


@pytest.mark.anyio
async def test_concurrent_callbacks_with_same_code_exchange_once(
    callback_server, token_endpoint
) -> None:
    token_endpoint.queue(200, GRANTED_TOKENS)
    token_endpoint.delay = 0.1
    await callback_server.start()
    params = {"code": "auth-code", "state": _oauth_state(callback_server)}

    async with _asgi_client(callback_server) as client:
        responses = await asyncio.gather(
            *(client.get("/oauth2callback", params=params) for _ in range(4))
        )

    assert [response.status_code for response in responses] == [200] * 4
    assert sum("Authentication successful" in response.text for response in responses) == 1
    assert sum("Already authenticated" in response.text for response in responses) == 3
    assert len(token_endpoint.requests) == 1


@pytest.mark.anyio
async def test_reused_failed_code_is_not_reported_as_success(
    callback_server, token_endpoint
) -> None:
    token_endpoint.queue(400, {"error": "invalid_grant", "error_description": "Bad Request"})
    await callback_server.start()
    params = {"code": "first", "state": _oauth_state(callback_server)}

    async with _asgi_client(callback_server) as client:
        failed = await client.get("/oauth2callback", params=params)
        reused = await client.get("/oauth2callback", params=params)

    assert failed.status_code == 502
    assert reused.status_code == 400
    assert "already used" in reused.text
    assert "Already authenticated" not in reused.text
    assert len(token_endpoint.requests) == 1
    assert callback_server.state is CallbackState.LISTENING


@pytest.mark.anyio
async def test_deadline_during_failed_exchange_ends_session(make_server, token_endpoint) -> None:
    server = make_server(callback_timeout_seconds=0.2)
    token_endpoint.delay = 0.5
    token_endpoint.queue(400, {"error": "invalid_grant"})
    await server.start()

    try:
        async with _asgi_client(server) as client:
            response = await client.get(
                "/oauth2callback", params={"code": "slow", "state": _oauth_state(server)}
            )

        assert response.status_code == 502
        with pytest.raises(AuthorizationTimeoutError):
            await asyncio.wait_for(server.wait(), timeout=2)
        await _wait_for_state(server, CallbackState.STOPPED)
    finally:
        await server.stop()


@pytest.mark.anyio
async def test_deadline_during_successful_exchange_still_installs(
    make_server, token_endpoint, store
) -> None:
    server = make_server(callback_timeout_seconds=0.2)
    token_endpoint.delay = 0.5
    token_endpoint.queue(200, GRANTED_TOKENS)
    await server.start()

    try:
        async with _asgi_client(server) as client:
            response = await client.get(
                "/oauth2callback", params={"code": "slow", "state": _oauth_state(server)}
            )

        assert response.status_code == 200
        record = await asyncio.wait_for(server.wait(), timeout=2)
        assert store.load() == record
        await _wait_for_state(server, CallbackState.STOPPED)
    finally:
        await server.stop()


@pytest.mark.anyio
async def test_stop_during_exchange_discards_late_tokens(
    callback_server, token_endpoint, store
) -> None:
    token_endpoint.queue(200, GRANTED_TOKENS)
    token_endpoint.delay = 0.3
    await callback_server.start()
    params = {"code": "auth-code", "state": _oauth_state(callback_server)}

    async with _asgi_client(callback_server) as client:
        request = asyncio.create_task(client.get("/oauth2callback", params=params))
        await _wait_for_state(callback_server, CallbackState.EXCHANGING)
        await callback_server.stop()
        response = await request

    assert response.status_code == 410
    assert callback_server.state is CallbackState.STOPPED
    assert not store.path.exists()
    with pytest.raises(AuthorizationCancelledError):
        await callback_server.wait()
