"""
Calendar tools exposed over the Model Context Protocol.

Every tool passes through :meth:`CalendarTools.ensure_authorized` first, so a
missing or expired credential turns into an actionable message instead of a
failed API call.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Optional

from googleapiclient.errors import HttpError
from mcp.server.fastmcp import FastMCP
from pydantic import Field

from calendar_mcp.clients.google_calendar import GoogleCalendarClient
from calendar_mcp.schemas.calendar import Attendee
from calendar_mcp.services.callback_server import AuthorizationCallbackServer, CallbackServerError
from calendar_mcp.services.token_manager import TokenManager
from calendar_mcp.utils.retry import RetryConfig

logger = logging.getLogger(__name__)

SERVER_NAME = "google-calendar"
MANUAL_AUTH_COMMAND = "python -m scripts.authorize"


class AuthorizationRequiredError(Exception):
    """Raised when no usable Google credential is available for a tool call."""


class CalendarColorsError(Exception):
    """Raised when the colors endpoint returns an unexpected payload."""


def _drop_none(body: dict[str, Any]) -> dict[str, Any]:
    # A null in a patch body clears the field on Google's side.
    return {key: value for key, value in body.items() if value is not None}


def _format_attendees(attendees: Optional[list[Attendee]]) -> Optional[list[dict]]:
    if attendees is None:
        return None
    return [attendee.model_dump() for attendee in attendees]


def _format_event(event: dict[str, Any]) -> str:
    start = event.get("start") or {}
    end = event.get("end") or {}
    lines = [f"{event.get('summary') or 'Untitled'} ({event.get('id') or 'no-id'})"]
    if event.get("location"):
        lines.append(f"Location: {event['location']}")
    if event.get("colorId"):
        lines.append(f"Color: {event['colorId']}")
    lines.append(f"Start: {start.get('dateTime') or start.get('date') or 'unspecified'}")
    lines.append(f"End: {end.get('dateTime') or end.get('date') or 'unspecified'}")
    attendees = event.get("attendees")
    if attendees:
        formatted = ", ".join(
            f"{attendee.get('email') or 'no-email'} ({attendee.get('responseStatus') or 'unknown'})"
            for attendee in attendees
        )
        lines.append(f"Attendees: {formatted}")
    return "\n".join(lines) + "\n"


def _format_color_section(title: str, colors: Optional[dict[str, dict]]) -> str:
    if not colors:
        return f"{title}:\n  No colors available"
    entries = "\n".join(
        f"  ID: {color_id}\n    Background: {color.get('background')}\n"
        f"    Foreground: {color.get('foreground')}"
        for color_id, color in colors.items()
    )
    return f"{title}:\n{entries}"


def _iso_utc(timestamp: str) -> str:
    """Render an RFC 3339 timestamp as UTC with millisecond precision."""
    parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CalendarTools:
    """Tool dispatcher: gate on the token manager, then call the Calendar API."""

    def __init__(
        self,
        calendar_client: GoogleCalendarClient,
        token_manager: TokenManager,
        callback_server: Optional[AuthorizationCallbackServer] = None,
        *,
        interactive_auth: bool = True,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self._calendar = calendar_client
        self._token_manager = token_manager
        self._callback_server = callback_server
        self._interactive_auth = interactive_auth and callback_server is not None
        self._retry = retry_config or RetryConfig(attempts=3, backoff_seconds=1.0)

    async def ensure_authorized(self) -> None:
        """Raise ``AuthorizationRequiredError`` unless a usable credential is installed."""
        attempt = 0
        while not await self._token_manager.validate():
            error = self._token_manager.last_refresh_error
            attempt += 1
            if error is None or not error.transient or attempt >= self._retry.attempts:
                raise AuthorizationRequiredError(await self._authorization_message())
            delay = self._retry.delay_for(attempt)
            logger.warning("Token refresh failed transiently, retrying in %.1fs: %s", delay, error)
            await asyncio.sleep(delay)

    async def _authorization_message(self) -> str:
        if self._interactive_auth and self._callback_server is not None:
            try:
                url = await self._callback_server.start()
            except CallbackServerError as exc:
                logger.error("Cannot authenticate interactively: %s", exc)
            else:
                return (
                    "Authentication required. Please visit "
                    f"{url} to authenticate with Google Calendar."
                )
        return (
            f'Authentication required. Please run "{MANUAL_AUTH_COMMAND}" '
            "to authenticate with Google Calendar."
        )

    async def list_calendars(self) -> str:
        await self.ensure_authorized()
        calendars = await self._call(self._calendar.list_calendars())
        return "\n".join(
            f"{calendar.get('summary') or 'Untitled'} ({calendar.get('id') or 'no-id'})"
            for calendar in calendars
        )

    async def list_events(
        self,
        calendar_id: str,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ) -> str:
        await self.ensure_authorized()
        events = await self._call(
            self._calendar.list_events(
                calendar_id=calendar_id, time_min=time_min, time_max=time_max
            )
        )
        return "\n".join(_format_event(event) for event in events)

    async def create_event(
        self,
        calendar_id: str,
        summary: str,
        start: str,
        end: str,
        description: Optional[str] = None,
        location: Optional[str] = None,
        attendees: Optional[list[Attendee]] = None,
        color_id: Optional[str] = None,
    ) -> str:
        await self.ensure_authorized()
        body = _drop_none(
            {
                "summary": summary,
                "description": description,
                "start": {"dateTime": start},
                "end": {"dateTime": end},
                "attendees": _format_attendees(attendees),
                "location": location,
                "colorId": color_id,
            }
        )
        event = await self._call(self._calendar.create_event(calendar_id=calendar_id, body=body))
        return f"Event created: {event.get('summary')} ({event.get('id')})"

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        summary: Optional[str] = None,
        description: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        location: Optional[str] = None,
        attendees: Optional[list[Attendee]] = None,
        color_id: Optional[str] = None,
    ) -> str:
        await self.ensure_authorized()
        body = _drop_none(
            {
                "summary": summary,
                "description": description,
                "start": {"dateTime": start} if start else None,
                "end": {"dateTime": end} if end else None,
                "attendees": _format_attendees(attendees),
                "location": location,
                "colorId": color_id,
            }
        )
        event = await self._call(
            self._calendar.update_event(calendar_id=calendar_id, event_id=event_id, body=body)
        )
        return f"Event updated: {event.get('summary')} ({event.get('id')})"

    async def delete_event(self, calendar_id: str, event_id: str) -> str:
        await self.ensure_authorized()
        await self._call(self._calendar.delete_event(calendar_id=calendar_id, event_id=event_id))
        return "Event deleted successfully"

    async def list_colors(self) -> str:
        await self.ensure_authorized()
        colors = await self._call(self._calendar.get_colors())
        if colors.get("kind") != "calendar#colors":
            raise CalendarColorsError("Invalid color data received from Google Calendar API")

        sections = [
            f"Last Updated: {_iso_utc(colors['updated'])}",
            _format_color_section("Calendar Colors", colors.get("calendar")),
            _format_color_section("Event Colors", colors.get("event")),
        ]
        return "\n\n".join(sections)

    async def _call(self, awaitable):
        try:
            return await awaitable
        except HttpError as exc:
            logger.error("Google Calendar API error: %s", exc)
            raise


def create_mcp_server(tools: CalendarTools) -> FastMCP:
    """Register the calendar tools on a FastMCP server."""
    mcp = FastMCP(SERVER_NAME)

    @mcp.tool(name="list-calendars", description="List all available calendars")
    async def list_calendars() -> str:
        return await tools.list_calendars()

    @mcp.tool(name="list-events", description="List events from a calendar")
    async def list_events(
        calendarId: Annotated[str, Field(description="ID of the calendar to list events from")],  # noqa: N803
        timeMin: Annotated[  # noqa: N803
            Optional[str], Field(description="Start time in ISO format (optional)")
        ] = None,
        timeMax: Annotated[  # noqa: N803
            Optional[str], Field(description="End time in ISO format (optional)")
        ] = None,
    ) -> str:
        return await tools.list_events(calendarId, timeMin, timeMax)

    @mcp.tool(name="create-event", description="Create a new calendar event")
    async def create_event(
        calendarId: Annotated[str, Field(description="ID of the calendar to create event in")],  # noqa: N803
        summary: Annotated[str, Field(description="Title of the event")],
        start: Annotated[str, Field(description="Start time in ISO format")],
        end: Annotated[str, Field(description="End time in ISO format")],
        description: Annotated[Optional[str], Field(description="Description of the event")] = None,
        location: Annotated[Optional[str], Field(description="Location of the event")] = None,
        attendees: Annotated[
            Optional[list[Attendee]], Field(description="List of attendees")
        ] = None,
        colorId: Annotated[  # noqa: N803
            Optional[str],
            Field(
                description="The color ID for the event (e.g., '1' for Lavender). "
                "Use list-colors to see available colors."
            ),
        ] = None,
    ) -> str:
        return await tools.create_event(
            calendarId, summary, start, end, description, location, attendees, colorId
        )

    @mcp.tool(name="update-event", description="Update an existing calendar event")
    async def update_event(
        calendarId: Annotated[str, Field(description="ID of the calendar containing the event")],  # noqa: N803
        eventId: Annotated[str, Field(description="ID of the event to update")],  # noqa: N803
        summary: Annotated[Optional[str], Field(description="New title of the event")] = None,
        description: Annotated[
            Optional[str], Field(description="New description of the event")
        ] = None,
        start: Annotated[Optional[str], Field(description="New start time in ISO format")] = None,
        end: Annotated[Optional[str], Field(description="New end time in ISO format")] = None,
        location: Annotated[Optional[str], Field(description="New location of the event")] = None,
        attendees: Annotated[
            Optional[list[Attendee]], Field(description="List of attendees")
        ] = None,
        colorId: Annotated[  # noqa: N803
            Optional[str],
            Field(
                description="The color ID for the event (e.g., '1' for Lavender). "
                "Use list-colors to see available colors."
            ),
        ] = None,
    ) -> str:
        return await tools.update_event(
            calendarId, eventId, summary, description, start, end, location, attendees, colorId
        )

    @mcp.tool(name="delete-event", description="Delete a calendar event")
    async def delete_event(
        calendarId: Annotated[str, Field(description="ID of the calendar containing the event")],  # noqa: N803
        eventId: Annotated[str, Field(description="ID of the event to delete")],  # noqa: N803
    ) -> str:
        return await tools.delete_event(calendarId, eventId)

    @mcp.tool(name="list-colors", description="List available colors for both calendars and events")
    async def list_colors() -> str:
        return await tools.list_colors()

    return mcp


__all__ = [
    "AuthorizationRequiredError",
    "CalendarColorsError",
    "CalendarTools",
    "MANUAL_AUTH_COMMAND",
    "SERVER_NAME",
    "create_mcp_server",
]
