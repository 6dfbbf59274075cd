"""Gmail API client.

Access Gmail through the Gmail REST API: Gmail search syntax, labels,
thread views and drafts. Requests run through the shared request executor,
so token refresh and retries are handled for you.

Usage:
    from gmailcal.gmail import GmailClient

    client = GmailClient(session.executor)

    # Search with Gmail query syntax
    messages = await client.search("from:student@gwu.edu subject:absent after:2026/01/20")

    for msg in messages:
        print(msg.subject, msg.sender, msg.date)
        print(msg.body)

    # List labels
    labels = await client.list_labels()
"""

from __future__ import annotations

from gmailcal.gmail.client import Draft, GmailClient, GmailMessage

__all__ = ["GmailClient", "GmailMessage", "Draft"]
