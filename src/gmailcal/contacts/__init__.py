"""Google Contacts client (People API).

Usage:
    from gmailcal.contacts import ContactsClient

    client = ContactsClient(session.executor)
    for contact in await client.search_contacts("Smith"):
        print(contact.display_name, contact.primary_email)
"""

from __future__ import annotations

from gmailcal.contacts.client import (
    Contact,
    ContactsClient,
    EmailAddress,
    Organization,
    PhoneNumber,
)

__all__ = ["ContactsClient", "Contact", "EmailAddress", "PhoneNumber", "Organization"]
