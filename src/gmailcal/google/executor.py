"""Authenticated request execution with retries.

All Gmail, Calendar and People API traffic goes through
:class:`RequestExecutor`, which:
- Injects the current access token into each request
- Retries rate limiting, 5xx responses and network failures with
  exponential backoff and jitter, up to a fixed number of attempts
- Refreshes the token and retries exactly once when an API answers 401
- Reports every failure as one of the errors in ``gmailcal.google.exceptions``
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import httpx

from gmailcal import __version__
from gmailcal.google.exceptions import (
    AuthError,
    GoogleAPIError,
    ParseError,
    RateLimitError,
    RequestCancelledError,
    error_from_response,
    error_from_transport,
)
from gmailcal.google.oauth import AccessToken, TokenManager

logger = logging.getLogger(__name__)

USER_AGENT = f"gmailcal/{__version__}"

# =============================================================================
# RETRY DEFAULTS
# =============================================================================
# Attempts count every network send made for one logical request, except the
# single resend that follows a forced token refresh.
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 0.5  # seconds before the first retry
DEFAULT_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY = 30.0  # cap for a single backoff wait
DEFAULT_JITTER = 0.25  # delay is scaled by a random factor in [1, 1 + jitter]
DEFAULT_TIMEOUT = 30.0  # per attempt


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff policy for retryable failures.

    Attributes:
        max_attempts: Total sends allowed for one request before giving up.
        base_delay: Seconds to wait before the first retry.
        multiplier: Growth factor between consecutive waits.
        max_delay: Upper bound for a single wait, including Retry-After hints.
        jitter: Fraction of random extra delay added to each wait.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    multiplier: float = DEFAULT_MULTIPLIER
    max_delay: float = DEFAULT_MAX_DELAY
    jitter: float = DEFAULT_JITTER

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def delay_for(
        self,
        failures: int,
        retry_after: float | None = None,
        rand: Callable[[], float] = random.random,
    ) -> float:
        """Seconds to wait after the ``failures``-th failed attempt."""
        if retry_after is not None:
            return min(self.max_delay, retry_after)
        delay = min(self.max_delay, self.base_delay * self.multiplier ** (failures - 1))
        return delay * (1 + self.jitter * rand())


@dataclass(frozen=True)
class RequestSpec:
    """One outbound API request, without authorization.

    Headers and params are copied into read-only mappings on creation.
    """

    method: str
    url: str
    params: Mapping[str, Any] | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    json: Any = None
    content: bytes | None = None

    def __post_init__(self) -> None:
        if any(name.lower() == "authorization" for name in self.headers):
            raise ValueError("RequestSpec must not carry an Authorization header")
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))
        if self.params is not None:
            object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    def __str__(self) -> str:
        return f"{self.method} {self.url}"


@dataclass(frozen=True)
class ExecutionResult:
    """Successful (2xx) response to a :class:`RequestSpec`."""

    status_code: int
    headers: httpx.Headers
    content: bytes
    url: str
    attempts: int = 1

    @classmethod
    def from_response(cls, response: httpx.Response, attempts: int = 1) -> ExecutionResult:
        return cls(
            status_code=response.status_code,
            headers=response.headers,
            content=response.content,
            url=str(response.request.url),
            attempts=attempts,
        )

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body as JSON (``None`` for an empty body).

        Raises:
            ParseError: If the body is not valid JSON.
        """
        if not self.content.strip():
            return None
        try:
            return json.loads(self.content)
        except ValueError as e:
            logger.debug(f"Malformed body from {self.url}: {self.text[:200]!r}")
            raise ParseError(
                f"Malformed JSON from {self.url}: {e}", status_code=self.status_code
            ) from e

    def json_object(self) -> dict[str, Any]:
        """Decode the body as a JSON object (``{}`` for an empty body).

        Raises:
            ParseError: If the body is not a JSON object.
        """
        payload = self.json()
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ParseError(
                f"Expected a JSON object from {self.url}, got {type(payload).__name__}",
                status_code=self.status_code,
            )
        return payload


class RequestExecutor:
    """Single path from the domain clients to the network.

    Example:
        >>> executor = RequestExecutor(token_manager)
        >>> result = await executor.execute(
        ...     RequestSpec("GET", "https://gmail.googleapis.com/gmail/v1/users/me/profile")
        ... )
        >>> result.json_object()["emailAddress"]
    """

    def __init__(
        self,
        tokens: TokenManager,
        *,
        policy: RetryPolicy | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        """Initialize the executor.

        Args:
            tokens: Token manager for the identity the requests run as.
            policy: Retry policy. Defaults to :class:`RetryPolicy()`.
            timeout: Timeout in seconds for each network attempt.
            http_client: Client to send with. Created (and owned) if omitted.
            transport: httpx transport for the owned client (tests, proxies).
            sleep: Coroutine used for backoff waits.
            rand: Source of jitter in [0, 1).
        """
        self._tokens = tokens
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self._sleep = sleep
        self._rand = rand
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )

    @property
    def tokens(self) -> TokenManager:
        return self._tokens

    async def execute(
        self,
        request: RequestSpec,
        allow_auth_retry: bool = True,
        *,
        total_timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Send a request, retrying per policy.

        Args:
            request: The request to send.
            allow_auth_retry: Whether a 401 may trigger one token refresh and
                one resend.
            total_timeout: Overall deadline in seconds, covering every
                attempt and backoff wait.
            cancel_event: Setting this event aborts the request.

        Returns:
            The successful response.

        Raises:
            AuthError: Credentials were rejected or could not be refreshed.
            RateLimitError: Still rate limited after ``max_attempts``.
            TransientNetworkError: Still failing after ``max_attempts``.
            ApiError: The request was rejected (4xx); not retried.
            RequestCancelledError: ``cancel_event`` was set or
                ``total_timeout`` expired.
        """
        deadline = asyncio.timeout(total_timeout)
        try:
            async with deadline:
                return await self._until_cancelled(
                    self._execute(request, allow_auth_retry), cancel_event
                )
        except TimeoutError as e:
            if not deadline.expired():
                raise
            logger.warning(f"{request} exceeded its {total_timeout}s deadline")
            raise RequestCancelledError(
                f"{request} exceeded its {total_timeout}s deadline"
            ) from e

    async def _execute(
        self,
        request: RequestSpec,
        allow_auth_retry: bool,
        token: AccessToken | None = None,
    ) -> ExecutionResult:
        try:
            return await self._send_with_backoff(request, token)
        except AuthError as e:
            if not (allow_auth_retry and e.token_rejected):
                raise
            logger.info(f"Access token rejected for {request}, refreshing and retrying once")

        refreshed = await self._refresh_with_backoff(request)
        # The resend uses the token this refresh produced and cannot trigger another refresh.
        return await self._execute(request, allow_auth_retry=False, token=refreshed)

    async def _refresh_with_backoff(self, request: RequestSpec) -> AccessToken:
        """Force a token refresh, retrying transient refresh failures per policy."""
        failures = 0
        while True:
            try:
                return await self._tokens.force_refresh()
            except AuthError as e:
                if not e.retryable:
                    raise
                failures += 1
                await self._wait_before_retry(request, e, failures)

    async def _send_with_backoff(
        self, request: RequestSpec, token: AccessToken | None
    ) -> ExecutionResult:
        failures = 0
        while True:
            try:
                if token is None:
                    token = await self._tokens.get_valid_token()
                response = await self._send_once(request, token)
                return ExecutionResult.from_response(response, attempts=failures + 1)
            except GoogleAPIError as e:
                if not e.retryable:
                    raise
                failures += 1
                await self._wait_before_retry(request, e, failures)
                token = None

    async def _wait_before_retry(
        self, request: RequestSpec, error: GoogleAPIError, failures: int
    ) -> None:
        """Back off before the next attempt, or raise ``error`` once attempts run out."""
        if failures >= self.policy.max_attempts:
            error.attempts = failures
            logger.error(f"{request} failed after {failures} attempt(s): {error}")
            raise error
        retry_after = error.retry_after if isinstance(error, RateLimitError) else None
        delay = self.policy.delay_for(failures, retry_after, self._rand)
        logger.warning(
            f"{request} failed ({error.kind.value}), retrying in {delay:.2f}s "
            f"(attempt {failures}/{self.policy.max_attempts})"
        )
        await self._sleep(delay)

    async def _send_once(self, request: RequestSpec, token: AccessToken) -> httpx.Response:
        headers = {"Accept": "application/json", **request.headers}
        headers["Authorization"] = token.authorization
        logger.debug(f"Sending {request}")
        try:
            response = await self._client.request(
                request.method,
                request.url,
                params=request.params,
                headers=headers,
                json=request.json,
                content=request.content,
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            raise error_from_transport(e, request.method, request.url) from e

        logger.debug(f"{request} -> {response.status_code}")
        if response.is_success:
            return response
        raise error_from_response(response)

    async def _until_cancelled(
        self, work: Awaitable[ExecutionResult], cancel_event: asyncio.Event | None
    ) -> ExecutionResult:
        """Await ``work`` unless ``cancel_event`` is set first."""
        if cancel_event is None:
            return await work

        work_task = asyncio.ensure_future(work)
        if cancel_event.is_set():
            work_task.cancel()
            raise RequestCancelledError("Request cancelled before it started")

        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({work_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work_task.cancel()
            cancel_task.cancel()
            raise

        if work_task.done():
            cancel_task.cancel()
            return work_task.result()

        work_task.cancel()
        await asyncio.wait({work_task})
        logger.info("Request cancelled by caller")
        raise RequestCancelledError("Request cancelled by caller")

    async def aclose(self) -> None:
        """Close the HTTP client if this executor created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> RequestExecutor:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()
