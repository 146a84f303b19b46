"""Retry/backoff settings shared by callers of the token gate."""

from __future__ import annotations


class RetryConfig:
    def __init__(self, *, attempts: int = 3, backoff_seconds: float = 1.0) -> None:
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds

    def delay_for(self, attempt: int) -> float:
        """Linear backoff before retry number ``attempt`` (1-based)."""
        return self.backoff_seconds * attempt


__all__ = ["RetryConfig"]
