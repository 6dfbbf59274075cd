"""CLI for gmailcal - credential checks and read-only Google queries.

Usage:
    gmailcal status                          # Show which credentials are configured
    gmailcal test                            # Refresh the token and call Gmail
    gmailcal token                           # Force a token refresh, show token info
    gmailcal gmail search "<query>"          # Search mail with Gmail query syntax
    gmailcal gmail labels                    # List Gmail labels
    gmailcal calendar list                   # List calendars
    gmailcal calendar events                 # List upcoming events
    gmailcal contacts list                   # List contacts
    gmailcal contacts search "<query>"       # Search contacts

Global options:
    -v, --verbose        Debug logging
    --log-file PATH      Also write logs to PATH
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from gmailcal.google.exceptions import CredentialsNotFoundError, GoogleAPIError, describe_error

if TYPE_CHECKING:
    from gmailcal.google.session import GoogleSession

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool = False, log_file: str | None = None) -> None:
    """Configure root logging for the CLI (stderr, optionally a file)."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def run_with_session(action: Callable[[GoogleSession], Awaitable[int]]) -> int:
    """Load settings, open a session, run ``action`` and report failures.

    Returns:
        The action's exit code, or 1 if configuration or a Google call failed.
    """
    from gmailcal.config import load_settings
    from gmailcal.google.session import GoogleSession

    try:
        settings = load_settings()
    except CredentialsNotFoundError as e:
        print(f"Error: {e}")
        return 1

    async def runner() -> int:
        async with GoogleSession.from_settings(settings) as session:
            return await action(session)

    try:
        return asyncio.run(runner())
    except GoogleAPIError as e:
        logger.debug(f"Command failed: {e!r}")
        print(describe_error(e))
        return 1


# =============================================================================
# Credential commands
# =============================================================================


def cmd_status() -> int:
    """Show status of all configured credentials."""
    from gmailcal.config import _load_env_file, get_credential_status, resolve_env_file

    _load_env_file(resolve_env_file())
    status = get_credential_status()

    print("=" * 60)
    print("GMAILCAL CREDENTIAL STATUS")
    print("=" * 60)
    print()
    print(f"Repository: {status['repo_root']}")
    print(f".env file:  {status['env_file']} {'[x]' if status['env_file_exists'] else '[ ]'}")
    print()

    print("Google OAuth:")
    print(f"  GMAIL_CLIENT_ID:      {'[x]' if status['oauth']['client_id'] else '[ ]'}")
    print(f"  GMAIL_CLIENT_SECRET:  {'[x]' if status['oauth']['client_secret'] else '[ ]'}")
    print(f"  GMAIL_REFRESH_TOKEN:  {'[x]' if status['oauth']['refresh_token'] else '[ ]'}")
    access = "[x]" if status["oauth"]["access_token"] else "[ ]"
    print(f"  GMAIL_ACCESS_TOKEN:   {access} (optional)")
    print()

    required = ("client_id", "client_secret", "refresh_token")
    return 0 if all(status["oauth"][name] for name in required) else 1


def print_token_info(info: dict) -> None:
    print(f"Status     : {info['status']}")
    if info.get("scopes"):
        print(f"Scopes     : {', '.join(info['scopes'])}")
    if "expires_in" in info:
        print(f"Expires in : {info['expires_in']}s")
    print(f"Refreshed  : {info.get('last_refresh') or 'never'}")
    print(f"Refreshes  : {info.get('refresh_count', 0)}")


def cmd_test() -> int:
    """Refresh the access token and read the Gmail profile."""

    async def action(session: GoogleSession) -> int:
        print("=" * 60)
        print("GMAILCAL CREDENTIAL TEST")
        print("=" * 60)
        print()

        await session.tokens.get_valid_token()
        print("  [✓] access token")
        email = await session.gmail().user_email()
        print(f"  [✓] gmail - {email}")
        return 0

    return run_with_session(action)


def cmd_token() -> int:
    """Force a token refresh and show the resulting token info."""

    async def action(session: GoogleSession) -> int:
        print("=" * 60)
        print("REFRESHING OAUTH TOKEN")
        print("=" * 60)
        await session.tokens.force_refresh()
        print("\nToken refreshed successfully!")
        print_token_info(session.tokens.get_token_info())
        return 0

    return run_with_session(action)


# =============================================================================
# Domain commands
# =============================================================================


def gmail_search(query: str, max_results: int) -> int:
    async def action(session: GoogleSession) -> int:
        messages = await session.gmail().search(query, max_results=max_results, include_body=False)
        if not messages:
            print("No messages found")
            return 0
        for msg in messages:
            date = msg.date.strftime("%Y-%m-%d %H:%M") if msg.date else "unknown date"
            print(f"{msg.id}  {date}  {msg.sender}")
            print(f"    {msg.subject}")
        return 0

    return run_with_session(action)


def gmail_labels() -> int:
    async def action(session: GoogleSession) -> int:
        for label in await session.gmail().list_labels():
            print(f"{label['id']:<30} {label['name']}")
        return 0

    return run_with_session(action)


def calendar_list() -> int:
    async def action(session: GoogleSession) -> int:
        for calendar in await session.calendar().list_calendars():
            mark = " (primary)" if calendar.primary else ""
            print(f"{calendar.id}  {calendar.summary}{mark}")
        return 0

    return run_with_session(action)


def calendar_events(calendar_id: str, max_results: int) -> int:
    async def action(session: GoogleSession) -> int:
        events = await session.calendar().list_events(calendar_id, max_results=max_results)
        if not events:
            print("No upcoming events")
            return 0
        for event in events:
            if event.start is None:
                when = "unknown"
            elif event.all_day:
                when = event.start.strftime("%Y-%m-%d")
            else:
                when = event.start.strftime("%Y-%m-%d %H:%M")
            print(f"{when:<17} {event.summary}")
        return 0

    return run_with_session(action)


def contacts_list(max_results: int) -> int:
    async def action(session: GoogleSession) -> int:
        print_contacts(await session.contacts().list_contacts(max_results))
        return 0

    return run_with_session(action)


def contacts_search(query: str, max_results: int) -> int:
    async def action(session: GoogleSession) -> int:
        print_contacts(await session.contacts().search_contacts(query, max_results))
        return 0

    return run_with_session(action)


def print_contacts(contacts: list) -> None:
    if not contacts:
        print("No contacts found")
        return
    for contact in contacts:
        print(f"{contact.display_name or '(no name)'}  <{contact.primary_email or '-'}>")


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="gmailcal",
        description="Gmail, Google Calendar and Google Contacts over one OAuth identity",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", type=str, default=None, help="Also write logs to this file")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("status", help="Show credential status")
    subparsers.add_parser("test", help="Test the configured credentials")
    subparsers.add_parser("token", help="Force a token refresh")

    # gmail
    gmail_parser = subparsers.add_parser("gmail", help="Gmail queries")
    gmail_subparsers = gmail_parser.add_subparsers(dest="gmail_command", help="Command")
    search_parser = gmail_subparsers.add_parser("search", help="Search messages")
    search_parser.add_argument("query", help="Gmail search query")
    search_parser.add_argument("--max", type=int, default=10, dest="max_results")
    gmail_subparsers.add_parser("labels", help="List labels")

    # calendar
    calendar_parser = subparsers.add_parser("calendar", help="Calendar queries")
    calendar_subparsers = calendar_parser.add_subparsers(dest="calendar_command", help="Command")
    calendar_subparsers.add_parser("list", help="List calendars")
    events_parser = calendar_subparsers.add_parser("events", help="List upcoming events")
    events_parser.add_argument("--calendar", type=str, default="primary", dest="calendar_id")
    events_parser.add_argument("--max", type=int, default=10, dest="max_results")

    # contacts
    contacts_parser = subparsers.add_parser("contacts", help="Contact queries")
    contacts_subparsers = contacts_parser.add_subparsers(dest="contacts_command", help="Command")
    list_parser = contacts_subparsers.add_parser("list", help="List contacts")
    list_parser.add_argument("--max", type=int, default=50, dest="max_results")
    contacts_search_parser = contacts_subparsers.add_parser("search", help="Search contacts")
    contacts_search_parser.add_argument("query", help="Name, email or phone prefix")
    contacts_search_parser.add_argument("--max", type=int, default=10, dest="max_results")

    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.verbose, args.log_file)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "status":
        return cmd_status()

    if args.command == "test":
        return cmd_test()

    if args.command == "token":
        return cmd_token()

    if args.command == "gmail":
        if args.gmail_command == "search":
            return gmail_search(args.query, args.max_results)
        elif args.gmail_command == "labels":
            return gmail_labels()
        gmail_parser.print_help()
        return 0

    if args.command == "calendar":
        if args.calendar_command == "list":
            return calendar_list()
        elif args.calendar_command == "events":
            return calendar_events(args.calendar_id, args.max_results)
        calendar_parser.print_help()
        return 0

    if args.command == "contacts":
        if args.contacts_command == "list":
            return contacts_list(args.max_results)
        elif args.contacts_command == "search":
            return contacts_search(args.query, args.max_results)
        contacts_parser.print_help()
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
