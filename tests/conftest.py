"""Shared fixtures: a scripted fake Google behind httpx.MockTransport."""

from __future__ import annotations

import asyncio
import inspect
import json
from urllib.parse import parse_qs

import httpx
import pytest

from gmailcal.google.executor import RequestExecutor, RetryPolicy
from gmailcal.google.oauth import Credentials, TokenManager

TOKEN_URL = "https://oauth2.test/token"
API_URL = "https://api.test/v1"


def token_response(access_token: str = "fresh-access-token", expires_in: int = 3600, **extra):
    return httpx.Response(
        200,
        json={
            "access_token": access_token,
            "expires_in": expires_in,
            "token_type": "Bearer",
            **extra,
        },
    )


def oauth_error(error: str, description: str = "", status_code: int = 400) -> httpx.Response:
    return httpx.Response(
        status_code, json={"error": error, "error_description": description}
    )


def api_error(status_code: int, message: str = "failed", reason: str | None = None, **kw):
    body: dict = {"error": {"code": status_code, "message": message}}
    if reason:
        body["error"]["errors"] = [{"reason": reason, "message": message}]
    return httpx.Response(status_code, json=body, **kw)


class FakeGoogle:
    """Records requests and replays scripted responses.

    Each script is a list; the last entry repeats once the list runs out.
    An entry may be an httpx.Response, an exception instance to raise, or a
    callable (plain or async) taking the request.
    """

    def __init__(self):
        self.token_script: list = [token_response()]
        self.api_script: list = [httpx.Response(200, json={"ok": True})]
        self.token_requests: list[httpx.Request] = []
        self.api_requests: list[httpx.Request] = []
        self.token_delay = 0.0
        self.api_delay = 0.0

    def _next(self, script: list, index: int, request: httpx.Request) -> httpx.Response:
        entry = script[min(index, len(script) - 1)]
        if isinstance(entry, Exception):
            raise entry
        if callable(entry):
            return entry(request)
        # fresh copy, a Response object is bound to a single request
        return httpx.Response(entry.status_code, headers=entry.headers, content=entry.content)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            self.token_requests.append(request)
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            response = self._next(self.token_script, len(self.token_requests) - 1, request)
        else:
            self.api_requests.append(request)
            if self.api_delay:
                await asyncio.sleep(self.api_delay)
            response = self._next(self.api_script, len(self.api_requests) - 1, request)
        if inspect.isawaitable(response):
            response = await response
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def token_form(self, index: int = 0) -> dict[str, str]:
        form = parse_qs(self.token_requests[index].content.decode())
        return {key: values[0] for key, values in form.items()}

    def api_json(self, index: int = -1):
        return json.loads(self.api_requests[index].content)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records backoff delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def credentials():
    return Credentials(
        client_id="test-client-id.apps.googleusercontent.com",
        client_secret="test-client-secret",
        refresh_token="1//test-refresh-token",
    )


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def make_tokens(credentials, google, clock):
    """Build a TokenManager talking to the fake token endpoint."""

    def make(**kwargs) -> TokenManager:
        kwargs.setdefault("token_url", TOKEN_URL)
        kwargs.setdefault("transport", google.transport)
        kwargs.setdefault("clock", clock)
        return TokenManager(credentials, **kwargs)

    return make


@pytest.fixture
def make_executor(make_tokens, google, fake_sleep):
    """Build a RequestExecutor seeded with a valid access token."""

    def make(tokens: TokenManager | None = None, **kwargs) -> RequestExecutor:
        if tokens is None:
            tokens = make_tokens(initial_access_token="seed-access-token")
        kwargs.setdefault("policy", RetryPolicy(max_attempts=5, base_delay=0.5, jitter=0.0))
        kwargs.setdefault("transport", google.transport)
        kwargs.setdefault("sleep", fake_sleep)
        kwargs.setdefault("rand", lambda: 0.0)
        return RequestExecutor(tokens, **kwargs)

    return make
