"""Schemas related to OAuth flows."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class OAuthCallbackParams(BaseModel):
    """Query parameters Google appends to the redirect URI."""

    code: Optional[str] = Field(None, description="Authorization code returned by Google OAuth.")
    state: Optional[str] = Field(None, description="Opaque state token issued when starting OAuth.")
    error: Optional[str] = Field(None, description="Error code when consent was not granted.")


class CallbackState(str, Enum):
    """Lifecycle of one authorization session on the callback server."""

    IDLE = "idle"
    LISTENING = "listening"
    EXCHANGING = "exchanging"
    INSTALLED = "installed"
    ERROR = "error"
    TIMEOUT = "timeout"
    STOPPED = "stopped"


class CallbackResult(str, Enum):
    """How a single callback request was handled."""

    INSTALLED = "installed"
    DUPLICATE = "duplicate"
    DENIED = "denied"
    INVALID = "invalid"
    EXCHANGE_FAILED = "exchange_failed"
    CODE_REUSED = "code_reused"
    CLOSED = "closed"


__all__ = ["CallbackResult", "CallbackState", "OAuthCallbackParams"]
