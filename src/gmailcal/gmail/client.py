"""Gmail API client implementation."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote

from gmailcal.google.exceptions import ParseError
from gmailcal.google.executor import RequestExecutor, RequestSpec

logger = logging.getLogger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"

# Upper bound on concurrent message fetches during a search
FETCH_CONCURRENCY = 10


@dataclass
class GmailMessage:
    """Represents a Gmail message."""

    id: str
    thread_id: str
    subject: str
    sender: str
    to: str
    date: datetime | None
    snippet: str
    body: str
    html: str | None = None
    labels: list[str] | None = None

    @property
    def preview(self) -> str:
        """Get message snippet as preview."""
        return self.snippet


@dataclass
class Draft:
    """Represents a Gmail draft."""

    id: str
    message_id: str
    thread_id: str | None = None


def decode_base64(data: str) -> str:
    """Decode Gmail's URL-safe base64, with or without padding."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def encode_base64_url_safe(data: bytes) -> str:
    """Encode bytes as URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


class GmailClient:
    """Gmail API client.

    Provides access to Gmail via the Gmail REST API: Gmail's native search
    syntax, labels, threads and drafts. All requests go through the shared
    :class:`RequestExecutor`, so auth and retry failures arrive as the
    taxonomy errors from ``gmailcal.google.exceptions``.

    Usage:
        client = GmailClient(executor)

        # Search with Gmail query syntax
        messages = await client.search("from:student@gwu.edu subject:absent")

        # Read messages
        for msg in messages:
            print(msg.subject, msg.sender)
            print(msg.body)

        # List labels
        labels = await client.list_labels()
    """

    def __init__(
        self,
        executor: RequestExecutor,
        user: str = "me",
        base_url: str = GMAIL_API_BASE_URL,
    ) -> None:
        """Initialize Gmail client.

        Args:
            executor: Shared request executor.
            user: Gmail user ID or "me" for authenticated user.
            base_url: Gmail API root.
        """
        self._executor = executor
        self._user = user
        self._base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self._base_url}/users/{quote(self._user, safe='')}{path}"

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        result = await self._executor.execute(RequestSpec("GET", self._url(path), params=params))
        return result.json_object()

    async def get_profile(self) -> dict[str, Any]:
        """Get the mailbox profile (email address, message and thread totals)."""
        return await self._get("/profile")

    async def user_email(self) -> str:
        """Get the authenticated user's email address."""
        profile = await self.get_profile()
        return profile.get("emailAddress", "")

    async def search(
        self,
        query: str = "",
        max_results: int = 50,
        include_body: bool = True,
        label_ids: list[str] | None = None,
    ) -> list[GmailMessage]:
        """Search for emails using Gmail query syntax.

        Args:
            query: Gmail search query (e.g., "from:user@example.com subject:test").
                  See https://support.google.com/mail/answer/7190 for syntax.
            max_results: Maximum number of messages to return.
            include_body: Whether to fetch full message body.
            label_ids: Only return messages carrying all of these labels.

        Returns:
            List of GmailMessage objects matching the query, in search order.
        """
        params: dict[str, Any] = {"maxResults": max_results}
        if query:
            params["q"] = query
        if label_ids:
            params["labelIds"] = label_ids

        results = await self._get("/messages", params)
        messages = results.get("messages", [])
        if not messages:
            return []

        # Fetch full message details concurrently, bounded
        semaphore = asyncio.Semaphore(FETCH_CONCURRENCY)

        async def fetch(msg_ref: dict) -> GmailMessage:
            async with semaphore:
                return await self.get_message(msg_ref["id"], include_body)

        tasks: list[asyncio.Task[GmailMessage]] = []
        try:
            async with asyncio.TaskGroup() as group:
                for ref in messages:
                    tasks.append(group.create_task(fetch(ref)))
        except ExceptionGroup as group_error:
            # the remaining fetches were cancelled; report the first failure
            error = group_error.exceptions[0]
            if isinstance(error, (KeyError, TypeError)):
                raise ParseError(f"Malformed message list from Gmail: {error!r}") from error
            raise error
        return [task.result() for task in tasks]

    async def list_messages(self, max_results: int = 10) -> list[GmailMessage]:
        """List the most recent inbox messages."""
        return await self.search(max_results=max_results, label_ids=["INBOX"])

    async def get_message(self, message_id: str, include_body: bool = True) -> GmailMessage:
        """Get a single message by ID.

        Args:
            message_id: Gmail message ID.
            include_body: Whether to fetch full message body.

        Returns:
            The parsed GmailMessage.
        """
        format_type = "full" if include_body else "metadata"
        msg = await self._get(f"/messages/{quote(message_id, safe='')}", {"format": format_type})
        return self._parse_message(msg, include_body)

    def _parse_message(self, msg: dict[str, Any], include_body: bool = True) -> GmailMessage:
        """Parse a message resource into a GmailMessage."""
        if "id" not in msg:
            raise ParseError("Gmail message is missing its id")

        payload = msg.get("payload") or {}
        try:
            headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
        except (KeyError, TypeError, AttributeError) as e:
            raise ParseError(f"Malformed headers in message {msg['id']}: {e!r}") from e

        date_str = headers.get("date", "")
        msg_date = None
        if date_str:
            with contextlib.suppress(TypeError, ValueError):
                msg_date = parsedate_to_datetime(date_str)

        body = ""
        html = None
        if include_body:
            body, html = self._extract_body(payload)

        return GmailMessage(
            id=msg["id"],
            thread_id=msg.get("threadId", ""),
            subject=headers.get("subject", ""),
            sender=headers.get("from", ""),
            to=headers.get("to", ""),
            date=msg_date,
            snippet=msg.get("snippet", ""),
            body=body,
            html=html,
            labels=msg.get("labelIds", []),
        )

    def _extract_body(self, payload: dict) -> tuple[str, str | None]:
        """Extract plain text and HTML body from message payload.

        Returns:
            Tuple of (plain_text, html_or_none).
        """
        plain_body = ""
        html_body = None

        def decode_part(part: dict) -> str:
            """Decode a message part."""
            data = part.get("body", {}).get("data", "")
            if not data:
                return ""
            try:
                return decode_base64(data)
            except ValueError as e:
                raise ParseError(f"Undecodable message part: {e}") from e

        def process_part(part: dict) -> None:
            nonlocal plain_body, html_body
            mime_type = part.get("mimeType", "")

            if mime_type == "text/plain" and not plain_body:
                plain_body = decode_part(part)
            elif mime_type == "text/html" and not html_body:
                html_body = decode_part(part)
            elif "parts" in part:
                for subpart in part["parts"]:
                    process_part(subpart)

        # Check if payload has direct body
        if payload.get("body", {}).get("data"):
            mime_type = payload.get("mimeType", "")
            decoded = decode_part(payload)
            if mime_type == "text/html":
                html_body = decoded
            else:
                plain_body = decoded
        elif "parts" in payload:
            for part in payload["parts"]:
                process_part(part)

        return plain_body, html_body

    async def list_labels(self) -> list[dict[str, str]]:
        """List all Gmail labels.

        Returns:
            List of dicts with 'id' and 'name' keys.
        """
        results = await self._get("/labels")
        try:
            return [
                {"id": label["id"], "name": label["name"]} for label in results.get("labels", [])
            ]
        except (KeyError, TypeError) as e:
            raise ParseError(f"Malformed label list from Gmail: {e!r}") from e

    async def get_threads(
        self,
        query: str = "",
        max_results: int = 50,
    ) -> list[dict[str, Any]]:
        """Get email threads matching a query.

        Args:
            query: Gmail search query.
            max_results: Maximum number of threads to return.

        Returns:
            List of thread metadata dicts.
        """
        params: dict[str, Any] = {"maxResults": max_results}
        if query:
            params["q"] = query
        results = await self._get("/threads", params)
        return results.get("threads", [])

    async def create_draft(
        self,
        to: str | list[str],
        subject: str,
        body: str,
        cc: list[str] | None = None,
        bcc: list[str] | None = None,
        thread_id: str | None = None,
        in_reply_to: str | None = None,
    ) -> Draft:
        """Create a draft email.

        Args:
            to: Recipient address or addresses.
            subject: Subject line.
            body: Plain-text body.
            cc: Optional CC addresses.
            bcc: Optional BCC addresses.
            thread_id: Thread to attach the draft to when replying.
            in_reply_to: Message-ID header of the message being replied to.

        Returns:
            The created Draft.
        """
        message = EmailMessage()
        message["To"] = to if isinstance(to, str) else ", ".join(to)
        message["Subject"] = subject
        if cc:
            message["Cc"] = ", ".join(cc)
        if bcc:
            message["Bcc"] = ", ".join(bcc)
        if in_reply_to:
            message["In-Reply-To"] = in_reply_to
            message["References"] = in_reply_to
        message.set_content(body)

        draft_message: dict[str, Any] = {"raw": encode_base64_url_safe(message.as_bytes())}
        if thread_id:
            draft_message["threadId"] = thread_id

        result = await self._executor.execute(
            RequestSpec("POST", self._url("/drafts"), json={"message": draft_message})
        )
        data = result.json_object()
        try:
            return Draft(
                id=data["id"],
                message_id=data["message"]["id"],
                thread_id=data["message"].get("threadId"),
            )
        except (KeyError, TypeError) as e:
            raise ParseError(f"Malformed draft response from Gmail: {e!r}") from e
