"""
Logging utilities for the MCP server and the authorization helpers.

Provides a consistent logging format and configuration. Records go to stderr
because stdout carries the MCP stdio protocol.
"""

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with a sensible default format."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stderr,
    )
    # uvicorn access lines would otherwise repeat every callback request.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


__all__ = ["configure_logging"]
