"""Run the Google OAuth authorization flow outside the MCP server.

Use this when the server runs headless (for example launched by an MCP client
without a browser) and a tool reports that authentication is required. The
script reuses a saved token when it is still usable (refreshing it if needed)
and otherwise starts the local callback listener, prints the consent URL and
waits until the redirect completes.

Example usages::

    # Authorize with the settings from .env / the environment.
    python -m scripts.authorize

    # Point at explicit files and skip opening a browser.
    python -m scripts.authorize --credentials-file ~/gcp-oauth.keys.json \
        --token-file ~/.config/google-calendar-mcp/tokens.json --no-browser
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from calendar_mcp.core.config import AppSettings, ConfigError, get_settings
from calendar_mcp.core.logging import configure_logging
from calendar_mcp.clients.google_auth import OAuthTokenExchangeError
from calendar_mcp.main import AuthComponents, build_auth_components
from calendar_mcp.services.callback_server import (
    AuthorizationCancelledError,
    AuthorizationTimeoutError,
    CallbackServerError,
    NoPortAvailableError,
)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_NO_PORT = 3
EXIT_TIMEOUT = 4
EXIT_EXCHANGE_ERROR = 5


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Authorize Google Calendar access for the MCP server."
    )
    parser.add_argument(
        "--credentials-file",
        type=Path,
        default=None,
        help="OAuth client secrets JSON (default: GCAL_MCP_CREDENTIALS_FILE).",
    )
    parser.add_argument(
        "--token-file",
        type=Path,
        default=None,
        help="Where to store the tokens (default: GCAL_MCP_TOKEN_FILE).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for the browser redirect.",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Only print the consent URL instead of opening a browser.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run the consent flow even if a usable token is already saved.",
    )
    return parser


def _settings_from_args(args: argparse.Namespace) -> AppSettings:
    settings = get_settings()
    updates: dict = {"interactive_auth": True}
    if args.credentials_file is not None:
        updates["credentials_file"] = args.credentials_file
    if args.token_file is not None:
        updates["token_file"] = args.token_file

    oauth_updates: dict = {}
    if args.timeout is not None:
        oauth_updates["callback_timeout_seconds"] = args.timeout
    if args.no_browser:
        oauth_updates["open_browser"] = False
    if oauth_updates:
        updates["oauth"] = settings.oauth.model_copy(update=oauth_updates)
    return settings.model_copy(update=updates)


async def authorize(components: AuthComponents, *, force: bool = False) -> int:
    """Ensure a usable token is saved, running the consent flow when needed."""
    if not force and await components.token_manager.load_saved():
        print(f"Existing credentials in {components.store.path} are valid.")
        return EXIT_OK

    server = components.callback_server
    try:
        url = await server.start()
    except NoPortAvailableError as exc:
        print(f"Cannot authenticate interactively: {exc}", file=sys.stderr)
        return EXIT_NO_PORT
    except CallbackServerError as exc:
        print(f"Could not start the authorization listener: {exc}", file=sys.stderr)
        return EXIT_NO_PORT

    print(f"Open {url} (or the URL below) in a browser to authorize Google Calendar access:")
    print(server.authorization_url)

    try:
        await server.wait()
    except AuthorizationTimeoutError as exc:
        print(f"Authorization timed out: {exc}", file=sys.stderr)
        return EXIT_TIMEOUT
    except (OAuthTokenExchangeError, AuthorizationCancelledError) as exc:
        print(f"Authorization failed: {exc}", file=sys.stderr)
        return EXIT_EXCHANGE_ERROR
    finally:
        await server.stop()
        components.token_manager.clear()

    print(f"Authorization complete. Tokens saved to {components.store.path}.")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = _settings_from_args(args)
    configure_logging(settings.log_level)

    try:
        components = build_auth_components(settings)
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        return asyncio.run(authorize(components, force=args.force))
    except KeyboardInterrupt:
        print("Authorization cancelled.", file=sys.stderr)
        return EXIT_EXCHANGE_ERROR


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
