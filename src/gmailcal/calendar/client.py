"""Google Calendar API client implementation."""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

from gmailcal.google.exceptions import ParseError
from gmailcal.google.executor import RequestExecutor, RequestSpec

CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"


@dataclass
class Calendar:
    """Represents a Google Calendar."""

    id: str
    summary: str
    description: str | None = None
    primary: bool = False
    time_zone: str | None = None


@dataclass
class Event:
    """Represents a Google Calendar event."""

    id: str
    summary: str
    start: datetime | None = None
    end: datetime | None = None
    description: str | None = None
    location: str | None = None
    status: str = "confirmed"
    html_link: str | None = None
    attendees: list[str] | None = None
    all_day: bool = False


class CalendarClient:
    """Google Calendar API client.

    Provides access to Google Calendar for managing calendars and events.

    Usage:
        client = CalendarClient(executor)

        # List calendars
        calendars = await client.list_calendars()

        # List events
        events = await client.list_events()

        # Create an event
        event = await client.create_event(
            summary="Meeting",
            start="2026-01-25T10:00:00",
            end="2026-01-25T11:00:00",
        )
    """

    def __init__(
        self,
        executor: RequestExecutor,
        base_url: str = CALENDAR_API_BASE_URL,
    ) -> None:
        """Initialize Calendar client.

        Args:
            executor: Shared request executor.
            base_url: Calendar API root.
        """
        self._executor = executor
        self._base_url = base_url.rstrip("/")

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        result = await self._executor.execute(
            RequestSpec(method, f"{self._base_url}{path}", params=params, json=json)
        )
        return result.json_object()

    # =========================================================================
    # Calendars
    # =========================================================================

    async def list_calendars(self) -> list[Calendar]:
        """List all calendars.

        Returns:
            List of Calendar objects.
        """
        results = await self._request("GET", "/users/me/calendarList")
        return [self._parse_calendar(item) for item in results.get("items", [])]

    async def get_calendar(self, calendar_id: str = "primary") -> Calendar:
        """Get a specific calendar.

        Args:
            calendar_id: Calendar ID or "primary" for the main calendar.

        Returns:
            The Calendar.
        """
        result = await self._request("GET", f"/users/me/calendarList/{quote(calendar_id, safe='')}")
        return self._parse_calendar(result)

    def _parse_calendar(self, data: dict) -> Calendar:
        """Parse calendar from API response."""
        if not isinstance(data, dict) or "id" not in data:
            raise ParseError("Calendar entry is missing its id")
        return Calendar(
            id=data["id"],
            summary=data.get("summary", ""),
            description=data.get("description"),
            primary=data.get("primary", False),
            time_zone=data.get("timeZone"),
        )

    # =========================================================================
    # Events
    # =========================================================================

    def _events_path(self, calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            path += f"/{quote(event_id, safe='')}"
        return path

    async def list_events(
        self,
        calendar_id: str = "primary",
        max_results: int = 100,
        time_min: datetime | str | None = None,
        time_max: datetime | str | None = None,
        query: str | None = None,
    ) -> list[Event]:
        """List events in a calendar.

        Args:
            calendar_id: Calendar ID or "primary" for the main calendar.
            max_results: Maximum number of events to return.
            time_min: Start of time range (defaults to now).
            time_max: End of time range.
            query: Free text search query.

        Returns:
            List of Event objects.
        """
        if time_min is None:
            time_min = datetime.now(timezone.utc)

        params: dict[str, Any] = {
            "maxResults": max_results,
            "singleEvents": True,
            "orderBy": "startTime",
            "timeMin": self._format_datetime(time_min),
        }
        if time_max:
            params["timeMax"] = self._format_datetime(time_max)
        if query:
            params["q"] = query

        results = await self._request("GET", self._events_path(calendar_id), params=params)
        return [self._parse_event(item) for item in results.get("items", [])]

    async def get_event(self, event_id: str, calendar_id: str = "primary") -> Event:
        """Get a specific event.

        Args:
            event_id: Event ID.
            calendar_id: Calendar ID.

        Returns:
            The Event.
        """
        result = await self._request("GET", self._events_path(calendar_id, event_id))
        return self._parse_event(result)

    async def create_event(
        self,
        summary: str,
        start: str | datetime,
        end: str | datetime | None = None,
        calendar_id: str = "primary",
        description: str | None = None,
        location: str | None = None,
        attendees: list[str] | None = None,
        all_day: bool = False,
        time_zone: str = "UTC",
    ) -> Event:
        """Create a new event.

        Args:
            summary: Event title.
            start: Start time as ISO string or datetime.
            end: End time (defaults to 1 hour after start, or 1 day if all-day).
            calendar_id: Calendar ID or "primary".
            description: Event description.
            location: Event location.
            attendees: List of attendee email addresses.
            all_day: Whether this is an all-day event.
            time_zone: IANA time zone for naive start/end times.

        Returns:
            Created Event.
        """
        start_dt = self._parse_input(start)
        if end is None:
            end_dt = start_dt + (timedelta(days=1) if all_day else timedelta(hours=1))
        else:
            end_dt = self._parse_input(end)
        if (start_dt.tzinfo is None) != (end_dt.tzinfo is None):
            raise ValueError("Event start and end must both have a time zone, or neither")
        if end_dt < start_dt:
            raise ValueError("Event end must not be before its start")

        if all_day:
            body: dict[str, Any] = {
                "summary": summary,
                "start": {"date": start_dt.strftime("%Y-%m-%d")},
                "end": {"date": end_dt.strftime("%Y-%m-%d")},
            }
        else:
            body = {
                "summary": summary,
                "start": {"dateTime": start_dt.isoformat(), "timeZone": time_zone},
                "end": {"dateTime": end_dt.isoformat(), "timeZone": time_zone},
            }

        if description:
            body["description"] = description
        if location:
            body["location"] = location
        if attendees:
            body["attendees"] = [{"email": email} for email in attendees]

        result = await self._request("POST", self._events_path(calendar_id), json=body)
        return self._parse_event(result)

    async def delete_event(self, event_id: str, calendar_id: str = "primary") -> None:
        """Delete an event.

        Args:
            event_id: Event ID to delete.
            calendar_id: Calendar ID.
        """
        await self._executor.execute(
            RequestSpec("DELETE", f"{self._base_url}{self._events_path(calendar_id, event_id)}")
        )

    def _parse_input(self, value: str | datetime) -> datetime:
        if isinstance(value, datetime):
            return value
        return datetime.fromisoformat(value.replace("Z", "+00:00"))

    def _format_datetime(self, dt: datetime | str) -> str:
        """Format datetime for API."""
        if isinstance(dt, str):
            return dt
        return dt.isoformat() + "Z" if dt.tzinfo is None else dt.isoformat()

    def _parse_time(self, data: dict) -> datetime | None:
        """Parse a start/end object, which holds either dateTime or date."""
        with contextlib.suppress(TypeError, ValueError):
            if "dateTime" in data:
                return datetime.fromisoformat(data["dateTime"].replace("Z", "+00:00"))
            if "date" in data:
                return datetime.fromisoformat(data["date"])
        return None

    def _parse_event(self, data: dict) -> Event:
        """Parse event from API response."""
        if not isinstance(data, dict) or "id" not in data:
            raise ParseError("Calendar event is missing its id")

        start_data = data.get("start") or {}
        attendees = None
        if data.get("attendees"):
            attendees = [a.get("email", "") for a in data["attendees"]]

        return Event(
            id=data["id"],
            summary=data.get("summary", ""),
            start=self._parse_time(start_data),
            end=self._parse_time(data.get("end") or {}),
            description=data.get("description"),
            location=data.get("location"),
            status=data.get("status", "confirmed"),
            html_link=data.get("htmlLink"),
            attendees=attendees,
            all_day="date" in start_data and "dateTime" not in start_data,
        )
