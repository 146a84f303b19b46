"""Callback app routes and MCP tool definitions."""
