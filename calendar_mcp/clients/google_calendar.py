"""Google Calendar v3 client wrapper."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, TypeVar

from googleapiclient.discovery import build

from calendar_mcp.clients.google_auth import GoogleOAuthClient

T = TypeVar("T")


class GoogleCalendarClient:
    """Thin async facade over the Calendar API using the installed credential."""

    def __init__(self, oauth_client: GoogleOAuthClient) -> None:
        self._oauth = oauth_client

    async def _execute(self, operation: Callable[[Any], T]) -> T:
        credentials = self._oauth.build_google_credentials()

        def _run() -> T:
            service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
            return operation(service)

        try:
            return await asyncio.to_thread(_run)
        finally:
            self._oauth.absorb_google_credentials(credentials)

    async def list_calendars(self) -> list[dict]:
        """Return the calendar list entries visible to the user."""
        response = await self._execute(lambda service: service.calendarList().list().execute())
        return response.get("items") or []

    async def list_events(
        self,
        *,
        calendar_id: str,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ) -> list[dict]:
        """Return single (expanded) events ordered by start time."""
        response = await self._execute(
            lambda service: service.events()
            .list(
                calendarId=calendar_id,
                timeMin=time_min,
                timeMax=time_max,
                singleEvents=True,
                orderBy="startTime",
            )
            .execute()
        )
        return response.get("items") or []

    async def create_event(self, *, calendar_id: str, body: dict) -> dict:
        return await self._execute(
            lambda service: service.events().insert(calendarId=calendar_id, body=body).execute()
        )

    async def update_event(self, *, calendar_id: str, event_id: str, body: dict) -> dict:
        """Patch only the supplied fields of an event."""
        return await self._execute(
            lambda service: service.events()
            .patch(calendarId=calendar_id, eventId=event_id, body=body)
            .execute()
        )

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        await self._execute(
            lambda service: service.events()
            .delete(calendarId=calendar_id, eventId=event_id)
            .execute()
        )

    async def get_colors(self) -> dict:
        return await self._execute(lambda service: service.colors().get().execute())


__all__ = ["GoogleCalendarClient"]
