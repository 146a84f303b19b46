"""
Short-lived local HTTP listener that completes the OAuth consent redirect.

The listener binds the first free port from a small candidate list, serves the
redirect target with uvicorn inside the running event loop, exchanges the code
it receives and hands the credential to the token manager before shutting down.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import secrets
import socket
import webbrowser
from datetime import datetime, timezone
from typing import Iterator, Optional

import uvicorn

from calendar_mcp.api.routes import create_callback_app
from calendar_mcp.clients.google_auth import (
    GoogleOAuthClient,
    OAuthStateEncoder,
    OAuthStateError,
    OAuthTokenExchangeError,
)
from calendar_mcp.core.config import OAuthSettings
from calendar_mcp.models.credentials import CredentialRecord
from calendar_mcp.schemas.auth import CallbackResult, CallbackState, OAuthCallbackParams
from calendar_mcp.services.token_manager import TokenManager

logger = logging.getLogger(__name__)

_ADDRESS_IN_USE = {errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)}


class CallbackServerError(Exception):
    """Raised when the callback listener fails for a reason other than a busy port."""


class NoPortAvailableError(CallbackServerError):
    """Raised when every candidate port is already in use."""


class AuthorizationTimeoutError(Exception):
    """Raised when the consent redirect does not arrive in time."""


class AuthorizationCancelledError(Exception):
    """Raised when the listener is stopped before authorization completes."""


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host application."""

    def install_signal_handlers(self) -> None:  # uvicorn < 0.29
        return

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:  # uvicorn >= 0.29
        yield


def bind_first_available(host: str, ports: tuple[int, ...]) -> tuple[socket.socket, int]:
    """Bind a listening socket on the first port in ``ports`` that is free."""
    for port in ports:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen()
        except OSError as exc:
            sock.close()
            if exc.errno in _ADDRESS_IN_USE:
                logger.debug("Port %s is in use, trying the next candidate", port)
                continue
            raise CallbackServerError(f"Could not bind {host}:{port}: {exc}") from exc
        sock.setblocking(False)
        return sock, sock.getsockname()[1]

    raise NoPortAvailableError(
        f"All candidate ports are in use: {', '.join(str(port) for port in ports)}"
    )


class AuthorizationCallbackServer:
    """Serve the OAuth redirect target for one authorization session at a time."""

    def __init__(
        self,
        oauth_client: GoogleOAuthClient,
        token_manager: TokenManager,
        oauth_settings: OAuthSettings,
        *,
        open_browser: Optional[bool] = None,
    ) -> None:
        self._oauth = oauth_client
        self._token_manager = token_manager
        self._settings = oauth_settings
        self._open_browser = oauth_settings.open_browser if open_browser is None else open_browser
        self._state_encoder = OAuthStateEncoder(oauth_client.client_secrets.client_secret)
        self._callback_path = oauth_client.client_secrets.callback_path

        self._app = create_callback_app(self, self._callback_path)

        self._state = CallbackState.IDLE
        self._server: Optional[_EmbeddedServer] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._timeout_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._exchange_lock = asyncio.Lock()
        self._reset_session()

    @property
    def app(self):
        return self._app

    @property
    def state(self) -> CallbackState:
        return self._state

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def callback_path(self) -> str:
        return self._callback_path

    @property
    def redirect_uri(self) -> Optional[str]:
        return self._redirect_uri

    @property
    def authorization_url(self) -> Optional[str]:
        return self._authorization_url

    @property
    def url(self) -> Optional[str]:
        """Local address that redirects the browser to Google's consent screen."""
        if self._port is None:
            return None
        return f"http://{self._settings.callback_host}:{self._port}/"

    @property
    def is_running(self) -> bool:
        return self._state in (CallbackState.LISTENING, CallbackState.EXCHANGING)

    def _reset_session(self) -> None:
        self._port: Optional[int] = None
        self._redirect_uri: Optional[str] = None
        self._authorization_url: Optional[str] = None
        self._nonce: Optional[str] = None
        self._consumed_codes: set[str] = set()
        self._exchange_failures = 0
        self._deadline_passed = False
        self._result: Optional[CredentialRecord] = None
        self._error: Optional[BaseException] = None
        self._finished = asyncio.Event()

    async def start(self) -> str:
        """Bind a port, serve the redirect target and open the consent page."""
        if self.is_running and self.url:
            return self.url
        if self._serve_task is not None:
            await self.stop()

        self._reset_session()
        sock, port = bind_first_available(self._settings.callback_host, self._settings.callback_ports)

        self._port = port
        self._redirect_uri = f"http://{self._settings.callback_host}:{port}{self._callback_path}"
        self._nonce = secrets.token_urlsafe(16)
        state = self._state_encoder.encode(
            {"nonce": self._nonce, "issued_at": datetime.now(timezone.utc).isoformat()}
        )
        self._authorization_url = self._oauth.build_authorization_url(
            redirect_uri=self._redirect_uri,
            state=state,
            force_consent=self._token_manager.needs_consent,
        )

        config = uvicorn.Config(
            self._app, log_config=None, log_level="warning", access_log=False, lifespan="off"
        )
        self._server = _EmbeddedServer(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))
        self._timeout_task = asyncio.create_task(
            self._expire_after(self._settings.callback_timeout_seconds)
        )
        self._state = CallbackState.LISTENING

        logger.info("Authorization server listening on %s", self.url)
        logger.info("Open this URL to authorize Google Calendar access: %s", self._authorization_url)
        if self._open_browser:
            try:
                webbrowser.open(self._authorization_url)
            except webbrowser.Error as exc:
                logger.warning("Could not open a browser automatically: %s", exc)
        return self.url  # type: ignore[return-value]

    async def stop(self) -> None:
        """Close the listener. Safe to call repeatedly or before ``start``."""
        current = asyncio.current_task()
        pending_stop = self._stop_task
        if pending_stop is not None and pending_stop is not current and not pending_stop.done():
            await pending_stop
        if self._timeout_task is not None and self._timeout_task is not current:
            self._timeout_task.cancel()
        self._timeout_task = None

        if self._server is not None:
            self._server.should_exit = True
        serve_task, self._serve_task = self._serve_task, None
        self._server = None
        if serve_task is not None:
            try:
                await serve_task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Authorization server terminated with an error")

        if self._state not in (CallbackState.IDLE, CallbackState.STOPPED):
            self._finish(AuthorizationCancelledError("Authorization server was stopped."))
            self._state = CallbackState.STOPPED
            logger.info("Authorization server stopped")

    async def wait(self) -> CredentialRecord:
        """Wait for the session outcome and return the installed credential."""
        await self._finished.wait()
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result

    async def handle_callback(self, params: OAuthCallbackParams) -> CallbackResult:
        """Process one redirect from Google's consent screen."""
        code, state = params.code, params.state
        if params.error:
            logger.warning("Authorization was not granted: %s", params.error)
            return CallbackResult.DENIED

        if not code:
            logger.warning("Callback request did not include an authorization code")
            return CallbackResult.INVALID

        async with self._exchange_lock:
            if self._result is not None:
                logger.info("Ignoring duplicate authorization callback")
                return CallbackResult.DUPLICATE
            if self._state is not CallbackState.LISTENING:
                return CallbackResult.CLOSED
            if code in self._consumed_codes:
                logger.warning("Rejected callback reusing an authorization code that failed")
                return CallbackResult.CODE_REUSED
            if not self._state_matches(state):
                return CallbackResult.INVALID

            self._state = CallbackState.EXCHANGING
            self._consumed_codes.add(code)
            try:
                record = await self._oauth.exchange_authorization_code(
                    code, redirect_uri=self._redirect_uri or ""
                )
            except OAuthTokenExchangeError as exc:
                if self._state is not CallbackState.EXCHANGING:
                    return CallbackResult.CLOSED
                return self._register_exchange_failure(exc)

            if self._state is not CallbackState.EXCHANGING:
                logger.warning(
                    "Authorization session ended during the code exchange; discarding tokens"
                )
                return CallbackResult.CLOSED

            try:
                record = self._token_manager.install(record)
            except OSError as exc:
                return self._register_exchange_failure(exc)

            self._state = CallbackState.INSTALLED
            self._finish(result=record)
            logger.info("Authorization completed successfully")
            return CallbackResult.INSTALLED

    def schedule_stop(self) -> None:
        """Stop the listener from outside the request that triggered it."""
        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.create_task(self.stop())

    def _register_exchange_failure(self, exc: BaseException) -> CallbackResult:
        self._exchange_failures += 1
        logger.error(
            "Error exchanging authorization code (attempt %s of %s): %s",
            self._exchange_failures,
            self._settings.max_exchange_attempts,
            exc,
        )
        if self._exchange_failures >= self._settings.max_exchange_attempts:
            self._state = CallbackState.ERROR
            self._finish(
                OAuthTokenExchangeError(f"Authorization failed after repeated attempts: {exc}")
            )
            self.schedule_stop()
        elif self._deadline_passed:
            self._time_out()
            self.schedule_stop()
        else:
            self._state = CallbackState.LISTENING
        return CallbackResult.EXCHANGE_FAILED

    def _state_matches(self, state: Optional[str]) -> bool:
        if not state:
            logger.warning("Callback request is missing the OAuth state parameter")
            return False
        try:
            payload = self._state_encoder.decode(state)
        except OAuthStateError as exc:
            logger.warning("Rejected callback with bad OAuth state: %s", exc)
            return False
        return secrets.compare_digest(str(payload.get("nonce", "")), self._nonce or "")

    def _finish(
        self, error: Optional[BaseException] = None, result: Optional[CredentialRecord] = None
    ) -> None:
        if self._finished.is_set():
            return
        self._error = error
        self._result = result
        self._finished.set()

    def _time_out(self) -> None:
        logger.error(
            "No authorization completed within %s seconds", self._settings.callback_timeout_seconds
        )
        self._state = CallbackState.TIMEOUT
        self._finish(AuthorizationTimeoutError("Timed out waiting for authorization."))

    async def _expire_after(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self._state is CallbackState.EXCHANGING:
            # The exchange in flight settles the session; a failure then ends it.
            self._deadline_passed = True
        elif self._state is CallbackState.LISTENING:
            self._time_out()
            await self.stop()


__all__ = [
    "AuthorizationCallbackServer",
    "AuthorizationCancelledError",
    "AuthorizationTimeoutError",
    "CallbackResult",
    "CallbackServerError",
    "CallbackState",
    "NoPortAvailableError",
    "bind_first_available",
]
