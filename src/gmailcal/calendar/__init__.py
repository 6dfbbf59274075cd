"""Google Calendar API client.

Usage:
    from gmailcal.calendar import CalendarClient

    client = CalendarClient(session.executor)

    # List calendars and upcoming events
    calendars = await client.list_calendars()
    events = await client.list_events(max_results=20)

    # Create an event
    event = await client.create_event(
        summary="Team Meeting",
        start="2026-01-25T10:00:00",
        end="2026-01-25T11:00:00",
    )
"""

from __future__ import annotations

from gmailcal.calendar.client import Calendar, CalendarClient, Event

__all__ = ["CalendarClient", "Calendar", "Event"]
