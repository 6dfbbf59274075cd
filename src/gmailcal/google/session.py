"""One OAuth identity shared by the Gmail, Calendar and People clients."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from gmailcal.google.executor import RequestExecutor, RetryPolicy
from gmailcal.google.oauth import Credentials, TokenManager

if TYPE_CHECKING:
    from gmailcal.calendar.client import CalendarClient
    from gmailcal.config import Settings
    from gmailcal.contacts.client import ContactsClient
    from gmailcal.gmail.client import GmailClient

logger = logging.getLogger(__name__)


class GoogleSession:
    """Wires one token manager and one request executor together.

    The three domain clients created from a session share its executor, so
    they share one access token and one refresh at a time.

    Usage:
        async with GoogleSession.from_settings(load_settings()) as session:
            messages = await session.gmail().search("is:unread", max_results=10)
            events = await session.calendar().list_events()
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        policy: RetryPolicy | None = None,
        request_timeout: float = 30.0,
        safety_margin: float = 60.0,
        default_lifetime: float = 600.0,
        initial_access_token: str | None = None,
        token_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.tokens = TokenManager(
            credentials,
            token_url=token_url,
            safety_margin=safety_margin,
            default_lifetime=default_lifetime,
            initial_access_token=initial_access_token,
            timeout=request_timeout,
            transport=transport,
        )
        self.executor = RequestExecutor(
            self.tokens,
            policy=policy,
            timeout=request_timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> GoogleSession:
        """Create a session from loaded configuration."""
        return cls(
            settings.credentials(),
            policy=settings.retry_policy(),
            request_timeout=settings.request_timeout,
            safety_margin=settings.token_safety_margin,
            default_lifetime=settings.token_expiry_seconds,
            initial_access_token=settings.access_token,
            transport=transport,
        )

    def gmail(self, user: str = "me") -> GmailClient:
        from gmailcal.gmail.client import GmailClient

        return GmailClient(self.executor, user=user)

    def calendar(self) -> CalendarClient:
        from gmailcal.calendar.client import CalendarClient

        return CalendarClient(self.executor)

    def contacts(self) -> ContactsClient:
        from gmailcal.contacts.client import ContactsClient

        return ContactsClient(self.executor)

    async def aclose(self) -> None:
        """Close both HTTP clients."""
        await self.executor.aclose()
        await self.tokens.aclose()
        logger.debug("Google session closed")

    async def __aenter__(self) -> GoogleSession:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()
