"""Google People API (contacts) client implementation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from gmailcal.google.exceptions import ParseError
from gmailcal.google.executor import RequestExecutor, RequestSpec

PEOPLE_API_BASE_URL = "https://people.googleapis.com/v1"

PERSON_FIELDS = "names,emailAddresses,phoneNumbers,organizations,photos"

# searchContacts rejects page sizes above 30
MAX_SEARCH_PAGE_SIZE = 30


@dataclass
class EmailAddress:
    value: str
    type: str | None = None


@dataclass
class PhoneNumber:
    value: str
    type: str | None = None


@dataclass
class Organization:
    name: str | None = None
    title: str | None = None


@dataclass
class Contact:
    """Represents a Google contact (a People API person)."""

    resource_name: str
    display_name: str = ""
    given_name: str | None = None
    family_name: str | None = None
    email_addresses: list[EmailAddress] = field(default_factory=list)
    phone_numbers: list[PhoneNumber] = field(default_factory=list)
    organizations: list[Organization] = field(default_factory=list)
    photo_url: str | None = None

    @property
    def primary_email(self) -> str | None:
        return self.email_addresses[0].value if self.email_addresses else None


class ContactsClient:
    """Google contacts client backed by the People API.

    Usage:
        client = ContactsClient(executor)
        contacts = await client.search_contacts("Smith")
        for contact in contacts:
            print(contact.display_name, contact.primary_email)
    """

    def __init__(
        self,
        executor: RequestExecutor,
        base_url: str = PEOPLE_API_BASE_URL,
    ) -> None:
        self._executor = executor
        self._base_url = base_url.rstrip("/")

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        result = await self._executor.execute(
            RequestSpec("GET", f"{self._base_url}/{path}", params=params)
        )
        return result.json_object()

    async def list_contacts(self, max_results: int = 100) -> list[Contact]:
        """List the user's contacts, sorted by first name.

        Args:
            max_results: Maximum number of contacts to return (1-1000).

        Returns:
            List of Contact objects.
        """
        results = await self._get(
            "people/me/connections",
            {
                "personFields": PERSON_FIELDS,
                "pageSize": max(1, min(max_results, 1000)),
                "sortOrder": "FIRST_NAME_ASCENDING",
            },
        )
        return [self._parse_contact(person) for person in results.get("connections", [])]

    async def search_contacts(self, query: str, max_results: int = 10) -> list[Contact]:
        """Search contacts by name, email, phone or organization.

        Args:
            query: Prefix query matched against contact fields.
            max_results: Maximum number of contacts to return (1-30).

        Returns:
            List of matching Contact objects.
        """
        results = await self._get(
            "people:searchContacts",
            {
                "query": query,
                "readMask": PERSON_FIELDS,
                "pageSize": max(1, min(max_results, MAX_SEARCH_PAGE_SIZE)),
            },
        )
        contacts = []
        for item in results.get("results", []):
            if not isinstance(item, dict) or "person" not in item:
                raise ParseError("Contact search result is missing its person")
            contacts.append(self._parse_contact(item["person"]))
        return contacts

    async def get_contact(self, resource_name: str) -> Contact:
        """Get a single contact.

        Args:
            resource_name: Resource name such as "people/c123".

        Returns:
            The Contact.
        """
        if not resource_name.startswith("people/"):
            raise ValueError(f"Invalid contact resource name: {resource_name}")
        result = await self._get(resource_name, {"personFields": PERSON_FIELDS})
        return self._parse_contact(result)

    def _parse_contact(self, data: dict) -> Contact:
        """Parse a person resource into a Contact."""
        if not isinstance(data, dict) or not data.get("resourceName"):
            raise ParseError("Contact is missing its resourceName")

        try:
            names = data.get("names") or [{}]
            name = names[0]
            photos = data.get("photos") or []
            photo = next((p for p in photos if not p.get("default")), photos[0] if photos else None)

            return Contact(
                resource_name=data["resourceName"],
                display_name=name.get("displayName", ""),
                given_name=name.get("givenName"),
                family_name=name.get("familyName"),
                email_addresses=[
                    EmailAddress(value=e["value"], type=e.get("type"))
                    for e in data.get("emailAddresses", [])
                ],
                phone_numbers=[
                    PhoneNumber(value=p["value"], type=p.get("type"))
                    for p in data.get("phoneNumbers", [])
                ],
                organizations=[
                    Organization(name=o.get("name"), title=o.get("title"))
                    for o in data.get("organizations", [])
                ],
                photo_url=photo.get("url") if photo else None,
            )
        except (KeyError, TypeError, AttributeError, IndexError) as e:
            raise ParseError(f"Malformed contact {data.get('resourceName')}: {e!r}") from e
