"""Expose constructed client wrappers."""

from .google_auth import (
    GoogleOAuthClient,
    OAuthStateEncoder,
    OAuthStateError,
    OAuthTokenExchangeError,
    OAuthTokenRefreshError,
)
from .google_calendar import GoogleCalendarClient

__all__ = [
    "GoogleCalendarClient",
    "GoogleOAuthClient",
    "OAuthStateEncoder",
    "OAuthStateError",
    "OAuthTokenExchangeError",
    "OAuthTokenRefreshError",
]
