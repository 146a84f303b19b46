"""
FastAPI dependency helpers for the authorization callback app.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from calendar_mcp.services.callback_server import AuthorizationCallbackServer


def get_callback_server(request: Request) -> "AuthorizationCallbackServer":
    """Return the callback server that owns the running app."""
    return request.app.state.callback_server


__all__ = ["get_callback_server"]
