"""
Owns the in-memory credential and decides whether it is usable.

Every protected operation goes through :meth:`TokenManager.validate`, which
refreshes a credential that is expired or about to expire before answering.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from calendar_mcp.clients.google_auth import GoogleOAuthClient, OAuthTokenRefreshError
from calendar_mcp.models.credentials import CredentialRecord
from calendar_mcp.services.credential_store import CredentialParseError, CredentialStore

logger = logging.getLogger(__name__)


class TokenManager:
    """Single authoritative holder of the current OAuth credential."""

    def __init__(
        self,
        store: CredentialStore,
        oauth_client: GoogleOAuthClient,
        *,
        refresh_margin_seconds: int = 300,
    ) -> None:
        self._store = store
        self._oauth = oauth_client
        self._refresh_margin_ms = refresh_margin_seconds * 1000
        self._record: Optional[CredentialRecord] = None
        self._refresh_lock = asyncio.Lock()
        self._last_refresh_error: Optional[OAuthTokenRefreshError] = None
        self._oauth.on_token_update(self._handle_token_update)

    @property
    def credentials(self) -> Optional[CredentialRecord]:
        return self._record

    @property
    def last_refresh_error(self) -> Optional[OAuthTokenRefreshError]:
        """The failure from the most recent refresh attempt, cleared on success."""
        return self._last_refresh_error

    @property
    def needs_consent(self) -> bool:
        """True when a new grant must explicitly ask Google for a refresh token."""
        if self._record is None or not self._record.refresh_token:
            return True
        error = self._last_refresh_error
        return error is not None and not error.transient

    async def load_saved(self) -> bool:
        """Install the persisted credential, refreshing it when it is near expiry."""
        try:
            record = self._store.load()
        except CredentialParseError as exc:
            logger.error("Saved token file is unreadable, re-authorization required: %s", exc)
            return False

        if record is None:
            logger.info("No token file found at %s", self._store.path)
            return False

        self._install(record)
        if not self._is_stale(record):
            return True

        if not record.refresh_token:
            logger.warning("Saved access token has expired and no refresh token is stored.")
            return False

        async with self._refresh_lock:
            return await self._refresh_locked()

    async def validate(self) -> bool:
        """Return whether a usable access token is installed, refreshing inline if needed."""
        if self._is_usable():
            return True

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited for the lock.
            if self._is_usable():
                return True
            if self._record is None or not self._record.refresh_token:
                return False
            return await self._refresh_locked()

    def install(self, record: CredentialRecord) -> CredentialRecord:
        """Persist and install a credential obtained from a fresh authorization."""
        saved = self._store.save(record)
        self._last_refresh_error = None
        self._install(saved)
        logger.info("Installed new OAuth credential, saved to %s", self._store.path)
        return saved

    def clear(self) -> None:
        """Forget the in-memory credential; the token file is left in place."""
        self._record = None
        self._oauth.set_credentials(None)

    def _install(self, record: CredentialRecord) -> None:
        self._record = record
        self._oauth.set_credentials(record)

    def _is_stale(self, record: CredentialRecord) -> bool:
        return record.is_expired(self._refresh_margin_ms)

    def _is_usable(self) -> bool:
        return self._record is not None and not self._is_stale(self._record)

    async def _refresh_locked(self) -> bool:
        record = self._record
        if record is None:
            return False

        try:
            refreshed = await self._oauth.refresh_token(record)
        except OAuthTokenRefreshError as exc:
            self._last_refresh_error = exc
            kind = "transient" if exc.transient else "permanent"
            logger.error("Error refreshing auth token (%s): %s", kind, exc)
            return False

        self._last_refresh_error = None
        updated = record.merged_with(refreshed)
        try:
            updated = self._store.merge_and_save(updated)
        except OSError as exc:
            logger.error("Refreshed token could not be saved to %s: %s", self._store.path, exc)
        self._install(updated)
        logger.info("Refreshed OAuth access token.")
        return True

    def _handle_token_update(self, partial: CredentialRecord) -> None:
        try:
            merged = self._store.merge_and_save(partial)
        except OSError as exc:
            logger.error("Error saving updated tokens: %s", exc)
            if self._record is not None:
                self._install(self._record.merged_with(partial))
            return
        if self._record is not None:
            merged = self._record.merged_with(merged)
        self._install(merged)


__all__ = ["TokenManager"]
