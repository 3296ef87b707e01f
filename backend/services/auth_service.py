"""Admin session tokens and the scheduler's shared secret."""

from __future__ import annotations

import secrets
from typing import Optional

from backend.utils.config import Settings, get_settings


class AuthenticationError(Exception):
    """Base authentication failure."""


class AdminTokenNotConfiguredError(AuthenticationError):
    """Raised when ADMIN_TOKEN is missing."""


class InvalidAdminTokenError(AuthenticationError):
    """Raised when provided token is invalid."""


class CronSecretNotConfiguredError(AuthenticationError):
    """Raised when CRON_SECRET is missing."""


class InvalidCronSecretError(AuthenticationError):
    """Raised when the scheduler presents the wrong secret."""


class AuthService:
    """Validates login credentials, session bearer tokens and the cron secret."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._session_token: str | None = None

    @property
    def auth_enabled(self) -> bool:
        return bool(self._settings.admin_token)

    def _expected_token(self) -> str:
        if not self._settings.admin_token:
            raise AdminTokenNotConfiguredError(
                "ADMIN_TOKEN is not configured. Set ADMIN_TOKEN in environment variables."
            )
        return self._settings.admin_token

    def login(self, provided_admin_token: str) -> str:
        expected = self._expected_token()
        if not secrets.compare_digest(provided_admin_token, expected):
            raise InvalidAdminTokenError("Invalid admin token")
        self._session_token = secrets.token_urlsafe(32)
        return self._session_token

    def validate_bearer_token(self, bearer_token: str) -> None:
        if not self.auth_enabled:
            return
        if self._session_token is None:
            raise InvalidAdminTokenError("No active session. Login first.")
        if not secrets.compare_digest(bearer_token, self._session_token):
            raise InvalidAdminTokenError("Invalid bearer token")

    def validate_cron_secret(self, provided_secret: Optional[str]) -> None:
        """Scheduler triggers always require the secret, even with admin auth off."""
        if not self._settings.cron_secret:
            raise CronSecretNotConfiguredError("CRON_SECRET is not configured")
        if not provided_secret or not secrets.compare_digest(
            provided_secret, self._settings.cron_secret
        ):
            raise InvalidCronSecretError("Invalid cron secret")
