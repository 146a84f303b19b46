"""Schemas for calendar tool inputs."""

from __future__ import annotations

from pydantic import BaseModel, Field


class Attendee(BaseModel):
    """An invitee on a calendar event."""

    email: str = Field(..., description="Email address of the attendee")


__all__ = ["Attendee"]
