"""
Entrypoint for the Google Calendar MCP server.

Assembles the OAuth client, credential store, token manager and callback
server once, lends them to the tool dispatcher and serves MCP over stdio.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from calendar_mcp.api.tools import CalendarTools, create_mcp_server
from calendar_mcp.clients.google_auth import GoogleOAuthClient
from calendar_mcp.clients.google_calendar import GoogleCalendarClient
from calendar_mcp.core.config import AppSettings, ConfigError, get_settings, load_client_secrets
from calendar_mcp.core.logging import configure_logging
from calendar_mcp.services.callback_server import AuthorizationCallbackServer, CallbackServerError
from calendar_mcp.services.credential_store import CredentialStore
from calendar_mcp.services.token_manager import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class AuthComponents:
    """The auth subsystem, built once per process."""

    oauth_client: GoogleOAuthClient
    store: CredentialStore
    token_manager: TokenManager
    callback_server: AuthorizationCallbackServer


def build_auth_components(settings: AppSettings) -> AuthComponents:
    """Construct the auth subsystem; raises ``ConfigError`` on bad client secrets."""
    client_secrets = load_client_secrets(settings.resolved_credentials_file)
    oauth_client = GoogleOAuthClient(client_secrets, settings.oauth)
    store = CredentialStore(settings.resolved_token_file)
    token_manager = TokenManager(
        store, oauth_client, refresh_margin_seconds=settings.oauth.refresh_margin_seconds
    )
    callback_server = AuthorizationCallbackServer(oauth_client, token_manager, settings.oauth)
    return AuthComponents(oauth_client, store, token_manager, callback_server)


async def cleanup(components: AuthComponents) -> None:
    """Close the callback listener and forget in-memory tokens; keep the token file."""
    logger.info("Cleaning up...")
    await components.callback_server.stop()
    components.token_manager.clear()


async def run(settings: AppSettings, components: Optional[AuthComponents] = None) -> None:
    components = components or build_auth_components(settings)

    if not await components.token_manager.load_saved():
        if settings.interactive_auth:
            logger.info("No valid tokens found, starting auth server...")
            try:
                await components.callback_server.start()
            except CallbackServerError as exc:
                logger.error("Failed to start auth server, interactive auth unavailable: %s", exc)
        else:
            logger.info("No valid tokens found; run the manual authorization flow.")

    tools = CalendarTools(
        GoogleCalendarClient(components.oauth_client),
        components.token_manager,
        components.callback_server,
        interactive_auth=settings.interactive_auth,
    )
    mcp = create_mcp_server(tools)

    main_task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, main_task.cancel)  # type: ignore[union-attr]
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            pass

    try:
        logger.info("Google Calendar MCP Server running on stdio")
        await mcp.run_stdio_async()
    except asyncio.CancelledError:
        logger.info("Shutdown requested")
    finally:
        await cleanup(components)


def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        components = build_auth_components(settings)
    except ConfigError as exc:
        logger.error("Server startup failed: %s", exc)
        return 1

    try:
        asyncio.run(run(settings, components))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
