"""Google OAuth access-token lifecycle.

This module keeps one short-lived access token available to every client that
shares an OAuth identity:
- Tokens are refreshed with the long-lived refresh token (authlib, httpx)
- At most one refresh runs at a time; concurrent callers share its outcome
- A revoked or invalid refresh token is remembered until new credentials
  are installed, so callers fail fast instead of hammering the token endpoint
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client

from gmailcal.google.exceptions import AuthError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

DEFAULT_SAFETY_MARGIN = 60.0
DEFAULT_TOKEN_LIFETIME = 600.0
DEFAULT_TIMEOUT = 30.0

# OAuth error codes that retrying with the same credentials cannot fix
FATAL_OAUTH_ERRORS = frozenset({"invalid_grant", "invalid_client", "unauthorized_client"})

def redact(secret: str | None) -> str:
    """Shorten a secret for logging, keeping only its first and last characters."""
    if not secret:
        return "<empty>"
    if len(secret) <= 10:
        return "<short>"
    return f"{secret[:4]}...{secret[-4:]}"


@dataclass(frozen=True)
class Credentials:
    """OAuth client identity plus the long-lived refresh token."""

    client_id: str
    client_secret: str = field(repr=False)
    refresh_token: str = field(repr=False)

    def __post_init__(self) -> None:
        empty = [
            name
            for name in ("client_id", "client_secret", "refresh_token")
            if not isinstance(getattr(self, name), str) or not getattr(self, name).strip()
        ]
        if empty:
            raise ValueError(f"Credentials must be non-empty strings: {', '.join(empty)}")


@dataclass(frozen=True)
class AccessToken:
    """Immutable snapshot of the current access token."""

    value: str
    expires_at: float
    scope: str | None = None
    token_type: str = "Bearer"
    # Overrides the manager's safety margin for tokens issued with a shorter lifetime
    margin: float | None = None

    def expires_in(self, now: float | None = None) -> float:
        """Seconds until expiry (negative once expired)."""
        return self.expires_at - (time.time() if now is None else now)

    def is_valid(self, now: float, margin: float = 0.0) -> bool:
        return now + margin < self.expires_at

    @property
    def authorization(self) -> str:
        """Value for the Authorization header."""
        return f"Bearer {self.value}"

    def __repr__(self) -> str:
        return (
            f"AccessToken(value={redact(self.value)!r}, expires_at={self.expires_at!r}, "
            f"scope={self.scope!r})"
        )


class TokenManager:
    """Owns the access token for one OAuth identity.

    Callers ask for a token with :meth:`get_valid_token`; the cached token is
    returned without waiting as long as it is valid for at least
    ``safety_margin`` more seconds. Otherwise a refresh is started, or joined
    if one is already running, and every waiter receives the same token or
    the same :class:`AuthError`.

    Example:
        >>> manager = TokenManager(Credentials("id", "secret", "refresh"))
        >>> token = await manager.get_valid_token()
        >>> headers = {"Authorization": token.authorization}
    """

    TOKEN_URL = GOOGLE_TOKEN_URL

    def __init__(
        self,
        credentials: Credentials,
        *,
        token_url: str | None = None,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        default_lifetime: float = DEFAULT_TOKEN_LIFETIME,
        initial_access_token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the token manager.

        Args:
            credentials: Client id, client secret and refresh token.
            token_url: OAuth token endpoint. Defaults to Google's.
            safety_margin: Seconds of remaining validity required before a
                cached token is handed out without refreshing.
            default_lifetime: Lifetime assumed for ``initial_access_token`` and
                for token responses without ``expires_in``.
            initial_access_token: Optional access token to start with.
            timeout: Timeout in seconds for each token endpoint call.
            transport: httpx transport override (tests, proxies).
            clock: Returns the current time as epoch seconds.
        """
        self.token_url = token_url or self.TOKEN_URL
        self.safety_margin = safety_margin
        self.default_lifetime = default_lifetime
        self._credentials = credentials
        self._clock = clock

        self._oauth = AsyncOAuth2Client(
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
            token_endpoint=self.token_url,
            token_endpoint_auth_method="client_secret_post",
            timeout=timeout,
            transport=transport,
        )

        self._token: AccessToken | None = None
        if initial_access_token:
            self._token = AccessToken(
                value=initial_access_token,
                expires_at=self._clock() + default_lifetime,
            )

        self._pending: asyncio.Task[AccessToken] | None = None
        self._fatal_error: AuthError | None = None
        self._generation = 0

        self.last_refresh: datetime | None = None
        self.refresh_count = 0

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    @property
    def current_token(self) -> AccessToken | None:
        """The cached token snapshot, valid or not. Never waits."""
        return self._token

    @property
    def refresh_in_progress(self) -> bool:
        return self._pending is not None

    def _margin_for(self, token: AccessToken) -> float:
        return self.safety_margin if token.margin is None else token.margin

    def _is_fresh(self, token: AccessToken | None) -> bool:
        return token is not None and token.is_valid(self._clock(), self._margin_for(token))

    async def get_valid_token(self) -> AccessToken:
        """Return a token valid for at least ``safety_margin`` seconds.

        Raises:
            AuthError: If a refresh was needed and failed. Fatal errors are
                raised again to every later caller until
                :meth:`replace_credentials` is called.
        """
        token = self._token
        if self._is_fresh(token):
            return token
        logger.debug("Access token missing or expiring, refreshing")
        return await self._refresh()

    async def force_refresh(self) -> AccessToken:
        """Refresh the token regardless of its expiry.

        Used by the request executor after an API answered 401. If a refresh
        is already running its outcome is shared instead of starting another.

        Raises:
            AuthError: If the refresh failed.
        """
        logger.info("Forcing access token refresh")
        return await self._refresh()

    def replace_credentials(self, credentials: Credentials) -> None:
        """Install new credentials and forget all state tied to the old ones.

        A refresh still running under the old credentials finishes for its
        own waiters, but its result is not cached.
        """
        self._credentials = credentials
        self._oauth.client_id = credentials.client_id
        self._oauth.client_secret = credentials.client_secret
        self._generation += 1
        self._token = None
        self._fatal_error = None
        self._pending = None
        logger.info(f"Credentials replaced for client {redact(credentials.client_id)}")

    async def _refresh(self) -> AccessToken:
        if self._fatal_error is not None:
            raise self._fatal_error

        pending = self._pending
        if pending is None:
            pending = asyncio.get_running_loop().create_task(self._run_refresh(self._generation))
            pending.add_done_callback(_consume_exception)
            self._pending = pending
        else:
            logger.debug("Joining refresh already in progress")

        # shield: one waiter being cancelled must not cancel the refresh for the others
        return await asyncio.shield(pending)

    async def _run_refresh(self, generation: int) -> AccessToken:
        try:
            token = await self._request_token()
        except AuthError as e:
            if e.fatal and generation == self._generation:
                self._fatal_error = e
            raise
        finally:
            if self._pending is asyncio.current_task():
                self._pending = None

        if generation == self._generation:
            self._token = token
            self.last_refresh = datetime.now()
            self.refresh_count += 1
        return token

    async def _request_token(self) -> AccessToken:
        """Run one refresh-token grant against the token endpoint."""
        credentials = self._credentials
        logger.debug(
            f"Requesting token from {self.token_url} "
            f"(client_id={redact(credentials.client_id)}, "
            f"refresh_token={redact(credentials.refresh_token)})"
        )

        try:
            payload = await self._oauth.refresh_token(
                self.token_url,
                refresh_token=credentials.refresh_token,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Token refresh timed out: {e!r}")
            raise AuthError(f"Token refresh timed out: {e!r}", fatal=False) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning(f"Token endpoint returned {status}")
            raise AuthError(
                f"Failed to refresh token. Status: {status}",
                fatal=False,
                status_code=status,
            ) from e
        except httpx.TransportError as e:
            logger.warning(f"Token refresh request failed: {e!r}")
            raise AuthError(f"Token refresh request failed: {e!r}", fatal=False) from e
        except AuthlibBaseError as e:
            fatal = e.error in FATAL_OAUTH_ERRORS
            message = f"Failed to refresh token: {e.error}"
            if e.description:
                message += f" ({e.description})"
            if fatal:
                logger.error(f"{message}. New credentials are required.")
            else:
                logger.warning(message)
            raise AuthError(message, fatal=fatal, reason=e.error) from e
        except ValueError as e:
            logger.error(f"Failed to parse token response: {e}")
            raise AuthError(f"Failed to parse token response: {e}", fatal=False) from e

        return self._parse_token(payload)

    def _parse_token(self, payload: Any) -> AccessToken:
        access_token = payload.get("access_token") if hasattr(payload, "get") else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthError("Token response is missing a non-empty access_token", fatal=False)

        expires_in = payload.get("expires_in")
        try:
            lifetime = float(expires_in) if expires_in is not None else self.default_lifetime
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid expires_in {expires_in!r}")
            lifetime = self.default_lifetime

        margin = None
        if lifetime <= self.safety_margin:
            margin = lifetime / 2
            logger.warning(
                f"Token lifetime {lifetime:.0f}s is within the {self.safety_margin:.0f}s "
                f"safety margin, using a {margin:.0f}s margin for this token"
            )

        token = AccessToken(
            value=access_token.strip(),
            expires_at=self._clock() + lifetime,
            margin=margin,
            scope=payload.get("scope"),
            token_type=payload.get("token_type") or "Bearer",
        )
        logger.info(f"Token refreshed, valid for {lifetime:.0f} seconds")
        logger.debug(f"Token (truncated): {redact(token.value)}")
        return token

    def get_token_info(self) -> dict[str, Any]:
        """Get information about the current token.

        Returns:
            Dictionary with token status, scope, expiry, refresh count, etc.
        """
        if self._fatal_error is not None:
            return {
                "status": "revoked",
                "error": str(self._fatal_error),
                "refresh_count": self.refresh_count,
            }
        token = self._token
        if token is None:
            return {"status": "no_token", "refresh_count": self.refresh_count}

        now = self._clock()
        if not token.is_valid(now):
            status = "expired"
        elif not token.is_valid(now, self._margin_for(token)):
            status = "expiring"
        else:
            status = "valid"

        return {
            "status": status,
            "expires_in": max(0, int(token.expires_in(now))),
            "scopes": token.scope.split() if token.scope else [],
            "refresh_count": self.refresh_count,
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
        }

    async def aclose(self) -> None:
        """Close the token endpoint HTTP client."""
        await self._oauth.aclose()

    async def __aenter__(self) -> TokenManager:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()


def _consume_exception(task: asyncio.Task) -> None:
    # Waiters may all have been cancelled; mark the outcome as retrieved.
    if not task.cancelled():
        task.exception()
