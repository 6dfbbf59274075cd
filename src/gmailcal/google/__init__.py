"""Google OAuth token lifecycle and resilient API request execution."""

from gmailcal.google.exceptions import (
    ApiError,
    AuthError,
    CredentialsNotFoundError,
    ErrorKind,
    GoogleAPIError,
    ParseError,
    RateLimitError,
    RequestCancelledError,
    TransientNetworkError,
    describe_error,
)
from gmailcal.google.executor import ExecutionResult, RequestExecutor, RequestSpec, RetryPolicy
from gmailcal.google.oauth import AccessToken, Credentials, TokenManager
from gmailcal.google.session import GoogleSession

__all__ = [
    "AccessToken",
    "Credentials",
    "TokenManager",
    "RequestExecutor",
    "RequestSpec",
    "ExecutionResult",
    "RetryPolicy",
    "GoogleSession",
    "GoogleAPIError",
    "ErrorKind",
    "AuthError",
    "RateLimitError",
    "TransientNetworkError",
    "ApiError",
    "ParseError",
    "RequestCancelledError",
    "CredentialsNotFoundError",
    "describe_error",
]
