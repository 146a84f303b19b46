"""
Google OAuth utilities.

These helpers manage the installed-app authorization flow and the token
refresh lifecycle for the single account this server acts for.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
from datetime import datetime, timezone
from hashlib import sha256
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from google.oauth2.credentials import Credentials

from calendar_mcp.core.config import ClientSecrets, OAuthSettings
from calendar_mcp.models.credentials import CredentialRecord, now_ms

logger = logging.getLogger(__name__)

TokenUpdateCallback = Callable[[CredentialRecord], None]


class OAuthStateError(Exception):
    """Raised when a returned OAuth state value fails verification."""


class OAuthTokenExchangeError(Exception):
    """Raised when the token endpoint rejects an authorization code."""


class OAuthTokenRefreshError(Exception):
    """Raised when a refresh token cannot be exchanged for a new access token.

    ``transient`` distinguishes network and provider-side failures, which are
    worth retrying, from a revoked or expired grant that needs re-consent.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class OAuthStateEncoder:
    """Encode and decode OAuth state values to guard against tampering."""

    def __init__(self, secret_key: str) -> None:
        self._secret_key = secret_key.encode("utf-8")

    def encode(self, payload: Dict[str, Any]) -> str:
        serialized = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        signature = hmac.new(self._secret_key, serialized.encode("utf-8"), sha256).digest()
        return base64.urlsafe_b64encode(signature + serialized.encode("utf-8")).decode("utf-8")

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            decoded = base64.urlsafe_b64decode(token.encode("utf-8"))
        except (binascii.Error, ValueError) as exc:
            raise OAuthStateError("OAuth state is not valid base64.") from exc
        signature, serialized = decoded[:32], decoded[32:]
        expected_signature = hmac.new(self._secret_key, serialized, sha256).digest()
        if not hmac.compare_digest(signature, expected_signature):
            raise OAuthStateError("Invalid OAuth state signature.")
        return json.loads(serialized)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> tuple[str, str]:
    """Return the OAuth ``error`` code and a readable description for a response."""
    payload = _json_or_none(response)
    if not isinstance(payload, dict):
        return "", response.text
    error = str(payload.get("error") or "")
    description = str(payload.get("error_description") or error or response.text)
    return error, description


def _record_from_token_payload(payload: Dict[str, Any], issued_at_ms: int) -> CredentialRecord:
    fields = dict(payload)
    expires_in = fields.pop("expires_in", None)
    if expires_in is not None:
        fields["expiry_date"] = issued_at_ms + int(expires_in) * 1000
    return CredentialRecord.model_validate(fields)


class GoogleOAuthClient:
    """Build Google authorization URLs, exchange codes and refresh tokens.

    The client also holds the credential currently in use for API calls and
    notifies subscribers when the Google client library rotates it silently.
    """

    AUTH_BASE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"

    def __init__(
        self,
        client_secrets: ClientSecrets,
        oauth_settings: OAuthSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._secrets = client_secrets
        self._oauth = oauth_settings
        self._transport = transport
        self._credentials: Optional[CredentialRecord] = None
        self._listeners: List[TokenUpdateCallback] = []

    @property
    def client_secrets(self) -> ClientSecrets:
        return self._secrets

    @property
    def scopes(self) -> tuple[str, ...]:
        return self._oauth.scopes

    @property
    def credentials(self) -> Optional[CredentialRecord]:
        return self._credentials

    def set_credentials(self, record: Optional[CredentialRecord]) -> None:
        self._credentials = record

    def on_token_update(self, callback: TokenUpdateCallback) -> None:
        """Subscribe to tokens rotated behind the scenes by the Google client library."""
        self._listeners.append(callback)

    def build_authorization_url(
        self,
        *,
        redirect_uri: str,
        state: str,
        scopes: Optional[tuple[str, ...]] = None,
        force_consent: bool = True,
    ) -> str:
        """Construct the Google OAuth consent URL."""
        params = {
            "client_id": self._secrets.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes or self._oauth.scopes),
            "access_type": "offline",
            "include_granted_scopes": "true",
            "state": state,
        }
        if force_consent:
            # Google only issues a refresh token on the first consent unless asked again.
            params["prompt"] = "consent"
        return f"{self._auth_url}?{urlencode(params)}"

    async def exchange_authorization_code(
        self, code: str, *, redirect_uri: str
    ) -> CredentialRecord:
        """Exchange an authorization code for a fresh credential record."""
        payload = {
            "code": code,
            "client_id": self._secrets.client_id,
            "client_secret": self._secrets.client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }

        issued_at = now_ms()
        try:
            response = await self._post_token_request(payload)
        except httpx.HTTPError as exc:
            raise OAuthTokenExchangeError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            _, description = _error_detail(response)
            raise OAuthTokenExchangeError(description)

        token_payload = _json_or_none(response)
        if not isinstance(token_payload, dict) or not token_payload.get("access_token"):
            raise OAuthTokenExchangeError("Incomplete token payload returned from Google.")

        return _record_from_token_payload(token_payload, issued_at)

    async def refresh_token(self, record: CredentialRecord) -> CredentialRecord:
        """Refresh the access token using the record's refresh token.

        The returned record only carries what Google sent back; Google usually
        omits ``refresh_token`` on refresh, so callers must merge.
        """
        if not record.refresh_token:
            raise OAuthTokenRefreshError("No refresh token available.")

        payload = {
            "client_id": self._secrets.client_id,
            "client_secret": self._secrets.client_secret,
            "refresh_token": record.refresh_token,
            "grant_type": "refresh_token",
        }

        issued_at = now_ms()
        try:
            response = await self._post_token_request(payload)
        except httpx.HTTPError as exc:
            raise OAuthTokenRefreshError(
                f"Token refresh request failed: {exc}", transient=True
            ) from exc

        if response.status_code >= httpx.codes.INTERNAL_SERVER_ERROR:
            _, description = _error_detail(response)
            raise OAuthTokenRefreshError(description, transient=True)
        if response.status_code != httpx.codes.OK:
            error, description = _error_detail(response)
            raise OAuthTokenRefreshError(f"{error or 'refresh rejected'}: {description}")

        token_payload = _json_or_none(response)
        if not isinstance(token_payload, dict) or not token_payload.get("access_token"):
            raise OAuthTokenRefreshError("Incomplete refresh payload returned from Google.")

        return _record_from_token_payload(token_payload, issued_at)

    def build_google_credentials(self) -> Credentials:
        """Google library credentials for the installed record."""
        record = self._credentials or CredentialRecord()
        expiry = None
        if record.expiry_date is not None:
            # google-auth compares against naive UTC datetimes.
            expiry = datetime.fromtimestamp(record.expiry_date / 1000, tz=timezone.utc).replace(
                tzinfo=None
            )
        return Credentials(
            token=record.access_token,
            refresh_token=record.refresh_token,
            token_uri=self._token_url,
            client_id=self._secrets.client_id,
            client_secret=self._secrets.client_secret,
            scopes=list(self._oauth.scopes),
            expiry=expiry,
        )

    def absorb_google_credentials(self, credentials: Credentials) -> None:
        """Pick up a token the Google library refreshed on its own and notify subscribers."""
        current = self._credentials
        if not credentials.token or (current is not None and credentials.token == current.access_token):
            return

        update: Dict[str, Any] = {"access_token": credentials.token}
        if credentials.expiry is not None:
            expiry = credentials.expiry.replace(tzinfo=timezone.utc)
            update["expiry_date"] = int(expiry.timestamp() * 1000)
        if credentials.refresh_token and (
            current is None or credentials.refresh_token != current.refresh_token
        ):
            update["refresh_token"] = credentials.refresh_token

        partial = CredentialRecord.model_validate(update)
        self._credentials = current.merged_with(partial) if current else partial
        logger.info("Google client rotated the access token; notifying subscribers.")
        for listener in list(self._listeners):
            listener(partial)

    @property
    def _auth_url(self) -> str:
        return self._secrets.auth_uri or self.AUTH_BASE_URL

    @property
    def _token_url(self) -> str:
        return self._secrets.token_uri or self.TOKEN_URL

    async def _post_token_request(self, payload: Dict[str, str]) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self._oauth.http_timeout_seconds, transport=self._transport
        ) as client:
            return await client.post(self._token_url, data=payload)


__all__ = [
    "GoogleOAuthClient",
    "OAuthStateEncoder",
    "OAuthStateError",
    "OAuthTokenExchangeError",
    "OAuthTokenRefreshError",
    "TokenUpdateCallback",
]
