"""Expose dependency helpers for FastAPI routers."""

from .callback import get_callback_server

__all__ = ["get_callback_server"]
