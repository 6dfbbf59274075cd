"""Centralized credential configuration.

Credentials come from the environment, with an optional .env file:
    GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET, GMAIL_REFRESH_TOKEN  - required
    GMAIL_ACCESS_TOKEN                                         - optional seed token
    TOKEN_EXPIRY_SECONDS, TOKEN_SAFETY_MARGIN_SECONDS          - token lifetime tuning
    GMAILCAL_REQUEST_TIMEOUT, GMAILCAL_RETRY_*                 - request policy

The .env file is read from the repository root unless DOTENV_PATH points
elsewhere. Variables already present in the environment take precedence.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from gmailcal.google.exceptions import CredentialsNotFoundError
from gmailcal.google.executor import (
    DEFAULT_BASE_DELAY,
    DEFAULT_JITTER,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_TIMEOUT,
    RetryPolicy,
)
from gmailcal.google.oauth import DEFAULT_SAFETY_MARGIN, DEFAULT_TOKEN_LIFETIME, Credentials

logger = logging.getLogger(__name__)

# Repository root (where this package is installed from)
# __file__ is src/gmailcal/config.py, so 3 levels up
REPO_ROOT = Path(__file__).parent.parent.parent
ENV_FILE = REPO_ROOT / ".env"

REQUIRED_VARS = ("GMAIL_CLIENT_ID", "GMAIL_CLIENT_SECRET", "GMAIL_REFRESH_TOKEN")


@dataclass(frozen=True)
class Settings:
    """Everything the core needs to reach Google for one identity."""

    client_id: str
    client_secret: str
    refresh_token: str
    access_token: str | None = None
    token_expiry_seconds: float = DEFAULT_TOKEN_LIFETIME
    token_safety_margin: float = DEFAULT_SAFETY_MARGIN
    request_timeout: float = DEFAULT_TIMEOUT
    retry_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_base_delay: float = DEFAULT_BASE_DELAY
    retry_max_delay: float = DEFAULT_MAX_DELAY
    retry_jitter: float = DEFAULT_JITTER

    def __repr__(self) -> str:
        return f"Settings(client_id={self.client_id!r}, ...)"

    def credentials(self) -> Credentials:
        return Credentials(
            client_id=self.client_id,
            client_secret=self.client_secret,
            refresh_token=self.refresh_token,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )


def _load_env_file(env_path: Path) -> dict[str, str]:
    """Load environment variables from a file.

    Args:
        env_path: Path to .env file.

    Returns:
        Dictionary of loaded variables.
    """
    loaded = {}
    if not env_path.exists():
        return loaded

    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue

            key, _, value = line.partition("=")
            key = key.strip()
            if key.startswith("export "):
                key = key[len("export ") :].strip()
            value = value.strip()

            # Remove surrounding quotes
            if (value.startswith('"') and value.endswith('"')) or (
                value.startswith("'") and value.endswith("'")
            ):
                value = value[1:-1]

            # Only set if not already in environment (env vars take precedence)
            if key and key not in os.environ:
                os.environ[key] = value
                loaded[key] = value

    return loaded


def resolve_env_file() -> Path:
    """Return the .env path, honouring DOTENV_PATH."""
    override = os.environ.get("DOTENV_PATH")
    return Path(override).expanduser() if override else ENV_FILE


def _number(env: Mapping[str, str], name: str, default: float, cast=float):
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default
    if value < 0:
        logger.warning(f"Ignoring negative {name}={raw!r}, using {default}")
        return default
    return value


def load_settings(
    env: Mapping[str, str] | None = None,
    env_file: str | Path | None = None,
) -> Settings:
    """Load settings from the environment.

    Args:
        env: Mapping to read instead of ``os.environ`` (no .env loading).
        env_file: .env file to load first. Defaults to DOTENV_PATH or the
            repository root .env.

    Returns:
        Loaded settings.

    Raises:
        CredentialsNotFoundError: If a required variable is missing or empty.
    """
    if env is None:
        path = Path(env_file) if env_file else resolve_env_file()
        loaded = _load_env_file(path)
        if loaded:
            logger.debug(f"Loaded {len(loaded)} variable(s) from {path}")
        env = os.environ

    logger.debug("Loading Gmail OAuth configuration from environment")
    values = {}
    for name in REQUIRED_VARS:
        value = (env.get(name) or "").strip()
        if not value:
            raise CredentialsNotFoundError(name)
        values[name] = value

    settings = Settings(
        client_id=values["GMAIL_CLIENT_ID"],
        client_secret=values["GMAIL_CLIENT_SECRET"],
        refresh_token=values["GMAIL_REFRESH_TOKEN"],
        access_token=(env.get("GMAIL_ACCESS_TOKEN") or "").strip() or None,
        token_expiry_seconds=_number(env, "TOKEN_EXPIRY_SECONDS", DEFAULT_TOKEN_LIFETIME),
        token_safety_margin=_number(env, "TOKEN_SAFETY_MARGIN_SECONDS", DEFAULT_SAFETY_MARGIN),
        request_timeout=_number(env, "GMAILCAL_REQUEST_TIMEOUT", DEFAULT_TIMEOUT),
        retry_max_attempts=max(
            1, _number(env, "GMAILCAL_RETRY_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS, cast=int)
        ),
        retry_base_delay=_number(env, "GMAILCAL_RETRY_BASE_DELAY", DEFAULT_BASE_DELAY),
        retry_max_delay=_number(env, "GMAILCAL_RETRY_MAX_DELAY", DEFAULT_MAX_DELAY),
        retry_jitter=min(1.0, _number(env, "GMAILCAL_RETRY_JITTER", DEFAULT_JITTER)),
    )
    logger.debug("OAuth configuration loaded successfully")
    return settings


def get_credential_status(env: Mapping[str, str] | None = None) -> dict:
    """Get status of all configured credentials.

    Returns:
        Dictionary with credential status.
    """
    env = os.environ if env is None else env
    env_file = resolve_env_file()
    return {
        "repo_root": str(REPO_ROOT),
        "env_file": str(env_file),
        "env_file_exists": env_file.exists(),
        "oauth": {
            "client_id": bool(env.get("GMAIL_CLIENT_ID")),
            "client_secret": bool(env.get("GMAIL_CLIENT_SECRET")),
            "refresh_token": bool(env.get("GMAIL_REFRESH_TOKEN")),
            "access_token": bool(env.get("GMAIL_ACCESS_TOKEN")),
        },
    }
