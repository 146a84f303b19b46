"""Service layer exports."""

from .credential_store import CredentialParseError, CredentialStore
from .token_manager import TokenManager

__all__ = [
    "CredentialParseError",
    "CredentialStore",
    "TokenManager",
]
