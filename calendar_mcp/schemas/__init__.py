"""Public schema exports."""

from .auth import CallbackResult, CallbackState, OAuthCallbackParams
from .calendar import Attendee

__all__ = [
    "Attendee",
    "CallbackResult",
    "CallbackState",
    "OAuthCallbackParams",
]
