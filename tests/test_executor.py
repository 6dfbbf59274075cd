"""Tests for the resilient request executor."""

import asyncio

import httpx
import pytest
from conftest import API_URL, api_error, oauth_error, token_response

from gmailcal.google import (
    ApiError,
    AuthError,
    ParseError,
    RateLimitError,
    RequestCancelledError,
    RequestSpec,
    RetryPolicy,
    TransientNetworkError,
)

ITEMS = f"{API_URL}/items"


class TestRetryPolicy:
    """Test backoff delay calculation."""

    def test_exponential_growth_capped(self):
        """Should double the delay per failure up to max_delay."""
        policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_only_adds(self):
        """Should scale the delay by a factor between 1 and 1 + jitter."""
        policy = RetryPolicy(base_delay=1.0, jitter=0.5)
        assert policy.delay_for(1, rand=lambda: 0.0) == 1.0
        assert policy.delay_for(1, rand=lambda: 1.0) == 1.5

    def test_retry_after_honoured_and_capped(self):
        """Should wait the server's Retry-After, but never above max_delay."""
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0)
        assert policy.delay_for(1, retry_after=3.0) == 3.0
        assert policy.delay_for(1, retry_after=120.0) == 10.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"base_delay": -1},
            {"multiplier": 0.5},
            {"jitter": 1.5},
        ],
    )
    def test_rejects_invalid_values(self, kwargs):
        """Should refuse nonsensical policies."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRequestSpec:
    """Test the outbound request description."""

    def test_rejects_authorization_header(self):
        """Should not let callers supply their own credentials."""
        with pytest.raises(ValueError, match="Authorization"):
            RequestSpec("GET", ITEMS, headers={"authorization": "Bearer x"})

    def test_is_read_only(self):
        """Should copy headers and params into read-only mappings."""
        headers = {"X-Test": "1"}
        spec = RequestSpec("get", ITEMS, params={"q": "a"}, headers=headers)
        headers["X-Test"] = "2"

        assert spec.method == "GET"
        assert spec.headers["X-Test"] == "1"
        with pytest.raises(TypeError):
            spec.params["q"] = "b"
        assert str(spec) == f"GET {ITEMS}"


class TestExecuteSuccess:
    """Test the happy path."""

    @pytest.mark.asyncio
    async def test_injects_bearer_token(self, make_executor, google):
        """Should send the current token and the request's own headers."""
        executor = make_executor()
        result = await executor.execute(
            RequestSpec("GET", ITEMS, params={"q": "x"}, headers={"X-Test": "1"})
        )

        assert result.status_code == 200
        assert result.attempts == 1
        assert result.json_object() == {"ok": True}
        request = google.api_requests[0]
        assert request.headers["Authorization"] == "Bearer seed-access-token"
        assert request.headers["X-Test"] == "1"
        assert request.headers["User-Agent"].startswith("gmailcal/")
        assert request.url.params["q"] == "x"
        assert google.token_requests == []
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_sends_json_body(self, make_executor, google):
        """Should encode the JSON body."""
        executor = make_executor()
        await executor.execute(RequestSpec("POST", ITEMS, json={"summary": "Meeting"}))

        assert google.api_requests[0].method == "POST"
        assert google.api_json() == {"summary": "Meeting"}
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_refreshes_missing_token_first(self, make_executor, make_tokens, google):
        """Should obtain a token before the first send when none is cached."""
        executor = make_executor(tokens=make_tokens())
        await executor.execute(RequestSpec("GET", ITEMS))

        assert len(google.token_requests) == 1
        assert google.api_requests[0].headers["Authorization"] == "Bearer fresh-access-token"
        await executor.aclose()


class TestAuthRetry:
    """Test the single refresh-and-retry on 401."""

    @pytest.mark.asyncio
    async def test_401_then_success(self, make_executor, google):
        """Should refresh once and resend with the new token."""
        google.api_script = [api_error(401, "Invalid Credentials"), httpx.Response(200, json={})]
        executor = make_executor()

        result = await executor.execute(RequestSpec("GET", ITEMS))

        assert result.status_code == 200
        assert len(google.token_requests) == 1
        assert len(google.api_requests) == 2
        assert google.api_requests[0].headers["Authorization"] == "Bearer seed-access-token"
        assert google.api_requests[1].headers["Authorization"] == "Bearer fresh-access-token"
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_401_twice_is_fatal(self, make_executor, google):
        """Should give up with a fatal AuthError after one refresh."""
        google.api_script = [api_error(401, "Invalid Credentials")]
        executor = make_executor()

        with pytest.raises(AuthError, match="Invalid Credentials") as exc_info:
            await executor.execute(RequestSpec("GET", ITEMS))

        assert exc_info.value.fatal
        assert exc_info.value.status_code == 401
        assert len(google.token_requests) == 1
        assert len(google.api_requests) == 2
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_auth_retry_disabled(self, make_executor, google):
        """Should not refresh when allow_auth_retry is off."""
        google.api_script = [api_error(401)]
        executor = make_executor()

        with pytest.raises(AuthError):
            await executor.execute(RequestSpec("GET", ITEMS), allow_auth_retry=False)

        assert google.token_requests == []
        assert len(google.api_requests) == 1
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_revoked_refresh_token_surfaces(self, make_executor, google):
        """Should raise the fatal refresh error when the forced refresh fails."""
        google.api_script = [api_error(401)]
        google.token_script = [oauth_error("invalid_grant", "Token has been expired or revoked.")]
        executor = make_executor()

        with pytest.raises(AuthError, match="invalid_grant") as exc_info:
            await executor.execute(RequestSpec("GET", ITEMS))

        assert exc_info.value.reason == "invalid_grant"
        assert len(google.api_requests) == 1
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_transient_forced_refresh_failure_retried(
        self, make_executor, google, fake_sleep
    ):
        """Should back off and retry the refresh when it fails transiently after a 401."""
        google.api_script = [api_error(401), httpx.Response(200, json={})]
        google.token_script = [httpx.Response(503), token_response()]
        executor = make_executor()

        result = await executor.execute(RequestSpec("GET", ITEMS))

        assert result.status_code == 200
        assert len(google.token_requests) == 2
        assert len(google.api_requests) == 2
        assert fake_sleep.delays == [0.5]
        assert google.api_requests[1].headers["Authorization"] == "Bearer fresh-access-token"
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_forced_refresh_failing_forever(self, make_executor, google, fake_sleep):
        """Should give up on the refresh after max_attempts and resend nothing."""
        google.api_script = [api_error(401)]
        google.token_script = [httpx.Response(503)]
        executor = make_executor()

        with pytest.raises(AuthError) as exc_info:
            await executor.execute(RequestSpec("GET", ITEMS))

        assert not exc_info.value.fatal
        assert exc_info.value.attempts == 5
        assert len(google.token_requests) == 5
        assert len(google.api_requests) == 1
        assert fake_sleep.delays == [0.5, 1.0, 2.0, 4.0]
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_concurrent_401s_share_one_refresh(self, make_executor, google):
        """Should run a single refresh for many requests rejected at once."""
        google.token_delay = 0.05

        def respond(request):
            if request.headers["Authorization"] == "Bearer seed-access-token":
                return api_error(401)
            return httpx.Response(200, json={})

        google.api_script = [respond]
        executor = make_executor()

        results = await asyncio.gather(
            *(executor.execute(RequestSpec("GET", ITEMS)) for _ in range(5))
        )

        assert all(r.status_code == 200 for r in results)
        assert len(google.token_requests) == 1
        await executor.aclose()


class TestBackoff:
    """Test retries of rate limiting and transient failures."""

    @pytest.mark.asyncio
    async def test_rate_limited_then_success(self, make_executor, google, fake_sleep):
        """Should back off with increasing delays until the request succeeds."""
        google.api_script = [api_error(429)] * 3 + [httpx.Response(200, json={"ok": True})]
        executor = make_executor()

        result = await executor.execute(RequestSpec("GET", ITEMS))

        assert result.attempts == 4
        assert len(google.api_requests) == 4
        assert fake_sleep.delays == [0.5, 1.0, 2.0]
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_retry_after_header(self, make_executor, google, fake_sleep):
        """Should wait as long as Retry-After asks."""
        google.api_script = [
            api_error(429, headers={"Retry-After": "7"}),
            httpx.Response(200, json={}),
        ]
        executor = make_executor()

        await executor.execute(RequestSpec("GET", ITEMS))
        assert fake_sleep.delays == [7.0]
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_rate_limit_403_is_retried(self, make_executor, google):
        """Should treat a 403 with a rate-limit reason as rate limiting."""
        google.api_script = [
            api_error(403, "User rate limit exceeded", reason="userRateLimitExceeded"),
            httpx.Response(200, json={}),
        ]
        executor = make_executor()

        result = await executor.execute(RequestSpec("GET", ITEMS))
        assert result.attempts == 2
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self, make_executor, google):
        """Should raise RateLimitError after max_attempts sends."""
        google.api_script = [api_error(429)]
        executor = make_executor(policy=RetryPolicy(max_attempts=3, jitter=0.0))

        with pytest.raises(RateLimitError) as exc_info:
            await executor.execute(RequestSpec("GET", ITEMS))

        assert exc_info.value.attempts == 3
        assert len(google.api_requests) == 3
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_server_error_forever(self, make_executor, google, fake_sleep):
        """Should make exactly max_attempts sends before giving up."""
        google.api_script = [api_error(500, "backendError")]
        executor = make_executor()

        with pytest.raises(TransientNetworkError) as exc_info:
            await executor.execute(RequestSpec("GET", ITEMS))

        assert len(google.api_requests) == 5
        assert exc_info.value.attempts == 5
        assert exc_info.value.status_code == 500
        assert len(fake_sleep.delays) == 4
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_network_failure_retried(self, make_executor, google):
        """Should retry connection failures."""
        google.api_script = [httpx.ConnectError("connection reset"), httpx.Response(200, json={})]
        executor = make_executor()

        result = await executor.execute(RequestSpec("GET", ITEMS))
        assert result.attempts == 2
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_timeout_classified_as_transient(self, make_executor, google):
        """Should report exhausted timeouts as TransientNetworkError."""
        google.api_script = [httpx.ReadTimeout("read timed out")]
        executor = make_executor(policy=RetryPolicy(max_attempts=2))

        with pytest.raises(TransientNetworkError, match="timed out"):
            await executor.execute(RequestSpec("GET", ITEMS))
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_retried(
        self, make_executor, make_tokens, google, fake_sleep
    ):
        """Should retry when fetching the token fails on the network."""
        google.token_script = [httpx.Response(503), token_response()]
        executor = make_executor(tokens=make_tokens())

        result = await executor.execute(RequestSpec("GET", ITEMS))

        assert result.status_code == 200
        assert len(google.token_requests) == 2
        assert len(fake_sleep.delays) == 1
        await executor.aclose()


class TestNonRetryable:
    """Test failures that are returned immediately."""

    @pytest.mark.asyncio
    async def test_not_found(self, make_executor, google, fake_sleep):
        """Should raise ApiError on 404 without retrying."""
        google.api_script = [api_error(404, "Requested entity was not found.", reason="notFound")]
        executor = make_executor()

        with pytest.raises(ApiError, match="not found") as exc_info:
            await executor.execute(RequestSpec("GET", ITEMS))

        assert exc_info.value.status_code == 404
        assert exc_info.value.reason == "notFound"
        assert len(google.api_requests) == 1
        assert fake_sleep.delays == []
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_forbidden_is_api_error(self, make_executor, google):
        """Should not retry a 403 that is not about rate limits."""
        google.api_script = [
            api_error(403, "Insufficient Permission", reason="insufficientPermissions")
        ]
        executor = make_executor()

        with pytest.raises(ApiError):
            await executor.execute(RequestSpec("GET", ITEMS))
        assert len(google.api_requests) == 1
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_malformed_json(self, make_executor, google):
        """Should raise ParseError when a 2xx body is not JSON."""
        google.api_script = [httpx.Response(200, text="{not json")]
        executor = make_executor()

        result = await executor.execute(RequestSpec("GET", ITEMS))
        with pytest.raises(ParseError):
            result.json()
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_json_object_requires_object(self, make_executor, google):
        """Should raise ParseError when an object was expected."""
        google.api_script = [httpx.Response(200, json=[1, 2])]
        executor = make_executor()

        result = await executor.execute(RequestSpec("GET", ITEMS))
        with pytest.raises(ParseError, match="JSON object"):
            result.json_object()
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_empty_body(self, make_executor, google):
        """Should treat an empty 204 body as no payload."""
        google.api_script = [httpx.Response(204)]
        executor = make_executor()

        result = await executor.execute(RequestSpec("DELETE", ITEMS))
        assert result.json() is None
        assert result.json_object() == {}
        await executor.aclose()


class TestCancellation:
    """Test caller cancellation and overall deadlines."""

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, make_executor, google):
        """Should stop promptly and send nothing more once cancelled."""
        google.api_script = [api_error(503)]
        cancel = asyncio.Event()

        async def sleep(delay):
            cancel.set()
            await asyncio.sleep(delay)

        executor = make_executor(policy=RetryPolicy(base_delay=60.0), sleep=sleep)

        with pytest.raises(RequestCancelledError):
            await asyncio.wait_for(
                executor.execute(RequestSpec("GET", ITEMS), cancel_event=cancel), timeout=5
            )
        assert len(google.api_requests) == 1
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_cancel_during_http_attempt(self, make_executor, google):
        """Should abort a request whose response has not arrived yet."""
        google.api_delay = 30.0
        cancel = asyncio.Event()
        executor = make_executor()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        with pytest.raises(RequestCancelledError):
            await asyncio.wait_for(
                executor.execute(RequestSpec("GET", ITEMS), cancel_event=cancel), timeout=5
            )
        assert len(google.api_requests) == 1
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, make_executor, google):
        """Should not send anything when the event is already set."""
        cancel = asyncio.Event()
        cancel.set()
        executor = make_executor()

        with pytest.raises(RequestCancelledError):
            await executor.execute(RequestSpec("GET", ITEMS), cancel_event=cancel)
        assert google.api_requests == []
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_total_timeout(self, make_executor, google):
        """Should raise RequestCancelledError when the deadline passes."""
        google.api_script = [api_error(503)]
        executor = make_executor(policy=RetryPolicy(base_delay=60.0), sleep=asyncio.sleep)

        with pytest.raises(RequestCancelledError, match="deadline"):
            await executor.execute(RequestSpec("GET", ITEMS), total_timeout=0.05)
        assert len(google.api_requests) == 1
        await executor.aclose()

    @pytest.mark.asyncio
    async def test_event_unused_when_request_finishes(self, make_executor, google):
        """Should return normally when the request completes first."""
        executor = make_executor()
        cancel = asyncio.Event()

        result = await executor.execute(RequestSpec("GET", ITEMS), cancel_event=cancel)
        assert result.status_code == 200
        await executor.aclose()
