"""Google Calendar tools for MCP clients, backed by a local OAuth2 credential."""

__version__ = "0.1.0"
