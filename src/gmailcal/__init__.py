"""gmailcal - Gmail, Google Calendar and Google Contacts over one OAuth identity.

Usage:
    from gmailcal import GoogleSession, load_settings

    async with GoogleSession.from_settings(load_settings()) as session:
        messages = await session.gmail().search("is:unread", max_results=10)
        events = await session.calendar().list_events()
        contacts = await session.contacts().search_contacts("Smith")
"""

__version__ = "0.1.0"

from gmailcal.config import Settings, load_settings  # noqa: E402
from gmailcal.google import GoogleAPIError, GoogleSession, describe_error  # noqa: E402

__all__ = [
    "__version__",
    "GoogleSession",
    "GoogleAPIError",
    "Settings",
    "describe_error",
    "load_settings",
]
