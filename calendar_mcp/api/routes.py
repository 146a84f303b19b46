"""
FastAPI routes served by the local authorization callback listener.
"""

from __future__ import annotations

from html import escape
from http import HTTPStatus
from typing import TYPE_CHECKING, Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Query
from fastapi.responses import HTMLResponse, RedirectResponse

from calendar_mcp.dependencies import get_callback_server
from calendar_mcp.schemas.auth import CallbackResult, OAuthCallbackParams

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from calendar_mcp.services.callback_server import AuthorizationCallbackServer

_PAGE_TEMPLATE = """<!doctype html>
<html>
  <head><meta charset="utf-8"><title>{title}</title></head>
  <body style="font-family: sans-serif; max-width: 40em; margin: 4em auto;">
    <h1>{title}</h1>
    <p>{message}</p>
  </body>
</html>
"""


def _page(title: str, message: str, status_code: int = HTTPStatus.OK) -> HTMLResponse:
    return HTMLResponse(
        _PAGE_TEMPLATE.format(title=escape(title), message=escape(message)),
        status_code=status_code,
    )


async def _stop_after_response(callback_server: Any) -> None:
    callback_server.schedule_stop()


async def start_authorization(
    callback_server: Annotated[Any, Depends(get_callback_server)],
) -> RedirectResponse | HTMLResponse:
    """Send the browser to Google's consent screen for the active session."""
    authorization_url = callback_server.authorization_url
    if not authorization_url or not callback_server.is_running:
        return _page(
            "Authorization unavailable",
            "No authorization is in progress. Restart the calendar server to try again.",
            HTTPStatus.SERVICE_UNAVAILABLE,
        )
    return RedirectResponse(url=authorization_url, status_code=HTTPStatus.TEMPORARY_REDIRECT)


async def handle_oauth_callback(
    background_tasks: BackgroundTasks,
    callback_server: Annotated[Any, Depends(get_callback_server)],
    code: str | None = Query(default=None, description="Authorization code returned by Google."),
    state: str | None = Query(default=None, description="OAuth state issued with the consent URL."),
    error: str | None = Query(default=None, description="Error reported by Google."),
) -> HTMLResponse:
    """Complete the OAuth exchange and tell the user whether it worked."""
    params = OAuthCallbackParams(code=code, state=state, error=error)
    result = await callback_server.handle_callback(params)

    if result is CallbackResult.INSTALLED:
        background_tasks.add_task(_stop_after_response, callback_server)
        return _page(
            "Authentication successful",
            "Google Calendar access is authorized. You can close this window.",
        )
    if result is CallbackResult.DUPLICATE:
        return _page(
            "Already authenticated",
            "This authorization was already completed. You can close this window.",
        )
    if result is CallbackResult.DENIED:
        return _page(
            "Authentication failed",
            f"Google reported: {error}. Open the sign-in link from the server log to try again.",
            HTTPStatus.BAD_REQUEST,
        )
    if result is CallbackResult.EXCHANGE_FAILED:
        return _page(
            "Authentication failed",
            "The authorization code could not be exchanged for tokens. "
            "Start the sign-in again from the link in the server log.",
            HTTPStatus.BAD_GATEWAY,
        )
    if result is CallbackResult.CODE_REUSED:
        return _page(
            "Authentication failed",
            "This authorization code was already used. "
            "Start the sign-in again from the link in the server log.",
            HTTPStatus.BAD_REQUEST,
        )
    if result is CallbackResult.CLOSED:
        return _page(
            "Authorization closed",
            "This authorization session has ended. Restart the sign-in from the server.",
            HTTPStatus.GONE,
        )
    return _page(
        "Authentication failed",
        "The callback was missing a valid authorization code.",
        HTTPStatus.BAD_REQUEST,
    )


def create_callback_app(
    callback_server: "AuthorizationCallbackServer", callback_path: str
) -> FastAPI:
    """Factory for the FastAPI application behind the callback listener."""
    router = APIRouter()
    router.add_api_route(
        "/", start_authorization, methods=["GET"], name="start_authorization", response_model=None
    )
    router.add_api_route(
        callback_path,
        handle_oauth_callback,
        methods=["GET"],
        name="handle_oauth_callback",
        response_model=None,
    )

    app = FastAPI(
        title="Google Calendar MCP authorization",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.callback_server = callback_server
    app.include_router(router)
    return app


__all__ = ["create_callback_app", "handle_oauth_callback", "start_authorization"]
