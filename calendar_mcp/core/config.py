"""
Application configuration models and helpers.

Centralizes settings management so the MCP server, the authorization callback
listener and the headless authorization script share one configuration surface.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_CALLBACK_PATH = "/oauth2callback"


class ConfigError(Exception):
    """Raised when application credentials are missing or malformed."""


def _split_csv(value: Any) -> tuple[Any, ...]:
    if isinstance(value, tuple):
        return value
    if isinstance(value, list):
        return tuple(value)
    if isinstance(value, int):
        return (value,)
    return tuple(item.strip() for item in str(value).split(",") if item.strip())


class OAuthSettings(BaseSettings):
    """OAuth flow configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    scopes: Annotated[tuple[str, ...], NoDecode] = Field(
        ("https://www.googleapis.com/auth/calendar",),
        validation_alias="GCAL_MCP_OAUTH_SCOPES",
    )
    callback_host: str = Field("localhost", validation_alias="GCAL_MCP_CALLBACK_HOST")
    callback_ports: Annotated[tuple[int, ...], NoDecode] = Field(
        (3000, 3001, 3002, 3003),
        validation_alias="GCAL_MCP_CALLBACK_PORTS",
        description="Candidate ports tried in order by the authorization callback server.",
    )
    callback_timeout_seconds: float = Field(
        300.0,
        validation_alias="GCAL_MCP_CALLBACK_TIMEOUT",
        description="How long the callback server waits for the consent redirect.",
    )
    max_exchange_attempts: int = Field(3, validation_alias="GCAL_MCP_MAX_EXCHANGE_ATTEMPTS")
    refresh_margin_seconds: int = Field(300, validation_alias="GCAL_MCP_REFRESH_MARGIN")
    http_timeout_seconds: float = Field(10.0, validation_alias="GCAL_MCP_HTTP_TIMEOUT")
    open_browser: bool = Field(True, validation_alias="GCAL_MCP_OPEN_BROWSER")

    @field_validator("scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
        """Support providing scopes as a comma-separated string."""
        return _split_csv(value)

    @field_validator("callback_ports", mode="before")
    @classmethod
    def _split_ports(cls, value: str | tuple[int, ...] | list[int]) -> tuple[Any, ...]:
        """Support providing candidate ports as a comma-separated string."""
        return _split_csv(value)


class AppSettings(BaseSettings):
    """Root settings object for the calendar MCP server."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    environment: str = Field("development", validation_alias="GCAL_MCP_ENV")
    log_level: str = Field("INFO", validation_alias="GCAL_MCP_LOG_LEVEL")
    credentials_file: Path = Field(
        Path("gcp-oauth.keys.json"),
        validation_alias="GCAL_MCP_CREDENTIALS_FILE",
        description="OAuth client secrets downloaded from the Google Cloud console.",
    )
    token_file: Path = Field(
        Path("~/.config/google-calendar-mcp/tokens.json"),
        validation_alias="GCAL_MCP_TOKEN_FILE",
        description="Where the user's OAuth tokens are persisted.",
    )
    interactive_auth: bool = Field(
        True,
        validation_alias="GCAL_MCP_INTERACTIVE_AUTH",
        description="Start the local callback server when no valid token is available.",
    )
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)

    @property
    def resolved_token_file(self) -> Path:
        return self.token_file.expanduser()

    @property
    def resolved_credentials_file(self) -> Path:
        return self.credentials_file.expanduser()


class ClientSecrets(BaseModel):
    """OAuth client identity issued by Google for an installed application."""

    client_id: str
    client_secret: str
    redirect_uris: list[str] = Field(default_factory=list)
    auth_uri: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_uri: str = "https://oauth2.googleapis.com/token"

    @field_validator("client_id", "client_secret")
    @classmethod
    def _require_value(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @property
    def redirect_uri(self) -> Optional[str]:
        return self.redirect_uris[0] if self.redirect_uris else None

    @property
    def callback_path(self) -> str:
        """Path component of the registered redirect URI used by the local listener."""
        if not self.redirect_uri:
            return DEFAULT_CALLBACK_PATH
        path = urlparse(self.redirect_uri).path
        if not path or path == "/":
            return DEFAULT_CALLBACK_PATH
        return path


def load_client_secrets(path: Path) -> ClientSecrets:
    """Read the client secrets file, raising ``ConfigError`` when unusable."""
    path = Path(path).expanduser()
    if not path.exists():
        raise ConfigError(
            f"OAuth client secrets not found at {path}. "
            "Download the desktop-app credentials JSON from the Google Cloud Console."
        )

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not read OAuth client secrets from {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"OAuth client secrets in {path} must be a JSON object.")

    # Google wraps the fields in "installed" or "web" depending on the client type.
    payload = raw.get("installed") or raw.get("web") or raw
    try:
        return ClientSecrets.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Malformed OAuth client secrets in {path}: {exc}") from exc


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "ClientSecrets",
    "ConfigError",
    "DEFAULT_CALLBACK_PATH",
    "OAuthSettings",
    "get_settings",
    "load_client_secrets",
]
