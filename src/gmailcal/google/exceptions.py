"""Error taxonomy shared by the Gmail, Calendar and People clients.

Every failure that crosses the network boundary is reported as one of a
closed set of kinds (see :class:`ErrorKind`). The classification of HTTP
responses and transport failures lives here so the request executor and the
token manager agree on what each kind means.
"""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum

import httpx

# Google reasons that signal overload even though the status is 403
RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})


class ErrorKind(str, Enum):
    """Closed set of error kinds surfaced by the core."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TRANSIENT_NETWORK = "transient_network"
    API = "api"
    PARSE = "parse"
    CANCELLED = "cancelled"


ERROR_DESCRIPTIONS: dict[ErrorKind, tuple[str, str]] = {
    ErrorKind.AUTH: (
        "Authentication Error: Google rejected the OAuth credentials.",
        "Check the OAuth credentials (GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET, "
        "GMAIL_REFRESH_TOKEN). A revoked refresh token must be replaced.",
    ),
    ErrorKind.RATE_LIMIT: (
        "Rate Limit Error: Google is throttling requests.",
        "Wait a few minutes before retrying or reduce the request volume.",
    ),
    ErrorKind.TRANSIENT_NETWORK: (
        "Network Error: Google could not be reached.",
        "Check the network connection; the request may succeed if retried later.",
    ),
    ErrorKind.API: (
        "Google API Error: the API request failed.",
        "The API request failed; check the request parameters and scopes.",
    ),
    ErrorKind.PARSE: (
        "Response Format Error: Google returned data in an unexpected format.",
        "The response had an unexpected format; enable verbose logging to inspect it.",
    ),
    ErrorKind.CANCELLED: (
        "Cancelled: the request was aborted before it completed.",
        "The caller cancelled the request or its deadline expired.",
    ),
}


class GoogleAPIError(Exception):
    """Base class for every error kind in the taxonomy."""

    kind: ErrorKind
    retryable: bool = False

    def __init__(self, message: str, *, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        self.attempts: int | None = None
        super().__init__(message)

    @property
    def description(self) -> str:
        return ERROR_DESCRIPTIONS[self.kind][0]

    @property
    def troubleshooting(self) -> str:
        return ERROR_DESCRIPTIONS[self.kind][1]


class AuthError(GoogleAPIError):
    """Raised when credentials are rejected or cannot be refreshed.

    Fatal errors (revoked or invalid refresh token, access token rejected
    after a fresh refresh) cannot be fixed by retrying. Non-fatal errors come
    from a refresh call that failed on the network and may be retried.
    """

    kind = ErrorKind.AUTH

    def __init__(
        self,
        message: str,
        *,
        fatal: bool = True,
        status_code: int | None = None,
        reason: str | None = None,
    ):
        self.fatal = fatal
        self.reason = reason
        super().__init__(message, status_code=status_code)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return not self.fatal

    @property
    def token_rejected(self) -> bool:
        """Whether an API endpoint answered 401 to the presented token."""
        return self.status_code == 401


class RateLimitError(GoogleAPIError):
    """Raised when Google signals overload (429 or a rate-limit 403)."""

    kind = ErrorKind.RATE_LIMIT
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code=status_code)


class TransientNetworkError(GoogleAPIError):
    """Raised on connection failures, timeouts and 5xx responses."""

    kind = ErrorKind.TRANSIENT_NETWORK
    retryable = True


class ApiError(GoogleAPIError):
    """Raised when Google rejects a request for a non-auth, non-quota reason."""

    kind = ErrorKind.API

    def __init__(self, message: str, *, status_code: int | None = None, reason: str | None = None):
        self.reason = reason
        super().__init__(message, status_code=status_code)


class ParseError(GoogleAPIError):
    """Raised when a response body does not have the expected structure."""

    kind = ErrorKind.PARSE


class RequestCancelledError(GoogleAPIError):
    """Raised when the caller cancels a request or its deadline expires."""

    kind = ErrorKind.CANCELLED


class CredentialsNotFoundError(Exception):
    """Raised when a required OAuth credential is not configured."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"{name} is not set. Add it to the environment or to the .env file "
            "(see `gmailcal status`)."
        )


def describe_error(error: GoogleAPIError) -> str:
    """Format an error with its description and troubleshooting hint."""
    lines = [error.description, f"  {error}"]
    if error.attempts:
        lines.append(f"  Gave up after {error.attempts} attempt(s).")
    lines.append(f"  Hint: {error.troubleshooting}")
    return "\n".join(lines)


# =============================================================================
# Classification
# =============================================================================


def google_error_details(response: httpx.Response) -> tuple[str, str | None]:
    """Extract (message, reason) from a Google error response.

    Handles both the REST format ``{"error": {"message": ..., "errors": [...]}}``
    and the OAuth format ``{"error": "invalid_grant", "error_description": ...}``.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    message: str | None = None
    reason: str | None = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            details = error.get("errors")
            if isinstance(details, list) and details and isinstance(details[0], dict):
                reason = details[0].get("reason")
            reason = reason or error.get("status")
        elif isinstance(error, str):
            reason = error
            message = payload.get("error_description") or error

    if not message:
        text = response.text.strip()
        message = text[:200] if text else response.reason_phrase
    return message, reason


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given as seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_from_response(response: httpx.Response) -> GoogleAPIError:
    """Map a non-2xx response to its taxonomy error."""
    status = response.status_code
    message, reason = google_error_details(response)
    target = f"{response.request.method} {response.request.url}"

    if status == 401:
        return AuthError(
            f"Access token rejected by {target}: {message}",
            fatal=True,
            status_code=status,
            reason=reason,
        )
    if status == 429 or (status == 403 and reason in RATE_LIMIT_REASONS):
        return RateLimitError(
            f"Rate limited by {target} ({status}): {message}",
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        return TransientNetworkError(
            f"Server error from {target} ({status}): {message}",
            status_code=status,
        )
    return ApiError(f"{target} failed ({status}): {message}", status_code=status, reason=reason)


def error_from_transport(exc: httpx.TransportError, method: str, url: str) -> TransientNetworkError:
    """Map an httpx transport failure (connect, DNS, timeout) to its taxonomy error."""
    if isinstance(exc, httpx.TimeoutException):
        return TransientNetworkError(f"{method} {url} timed out: {exc!r}")
    return TransientNetworkError(f"{method} {url} failed: {exc!r}")
