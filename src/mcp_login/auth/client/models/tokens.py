"""Token models for OAuth 2.1.

Contains the persisted token record, token endpoint requests and responses,
and the result handed back to callers of the resolution policy.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from mcp_login.auth.client.config import DEFAULT_EXPIRY_BUFFER_MS


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


class StoredTokens(BaseModel):
    """OAuth tokens as persisted in the cache."""

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_at: int | None = None  # Unix milliseconds, None = non-expiring

    def is_valid(
        self,
        buffer_ms: int = DEFAULT_EXPIRY_BUFFER_MS,
        now: int | None = None,
    ) -> bool:
        """Check if the access token is usable for at least ``buffer_ms``."""
        if not self.access_token:
            return False

        if self.expires_at is None:
            return True  # No expiry means token doesn't expire

        if now is None:
            now = now_ms()
        return self.expires_at > now + buffer_ms

    def can_refresh(self) -> bool:
        """Check if token can be refreshed."""
        return bool(self.refresh_token)


@dataclass(frozen=True)
class TokenRequest:
    """OAuth 2.1 token exchange request parameters (RFC 6749 Section 4.1.3).

    Includes PKCE code_verifier (RFC 7636) and resource parameter (RFC 8707).
    """

    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str
    code_verifier: str = field(repr=False)

    client_secret: str | None = field(default=None, repr=False)
    grant_type: str = "authorization_code"
    resource: str | None = None

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request.

        Confidential clients authenticate with HTTP Basic instead of sending
        client_id in the body.
        """
        data = {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "code_verifier": self.code_verifier,
        }

        if not self.client_secret:
            data["client_id"] = self.client_id
        if self.resource:
            data["resource"] = self.resource

        return data


@dataclass(frozen=True)
class RefreshTokenRequest:
    """OAuth 2.1 refresh token request parameters (RFC 6749 Section 6)."""

    token_endpoint: str
    refresh_token: str = field(repr=False)
    client_id: str

    client_secret: str | None = field(default=None, repr=False)
    grant_type: str = "refresh_token"
    resource: str | None = None

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request."""
        data = {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
        }

        if not self.client_secret:
            data["client_id"] = self.client_id
        if self.resource:
            data["resource"] = self.resource

        return data


class TokenResponse(BaseModel):
    """Successful OAuth 2.1 token response (RFC 6749 Section 5.1)."""

    access_token: str = Field(min_length=1)
    token_type: str = "Bearer"
    expires_in: int | None = None  # Seconds until expiry
    refresh_token: str | None = None
    scope: str | None = None

    def to_stored_tokens(self, now: int | None = None) -> StoredTokens:
        """Convert to the persisted form with an absolute expiry."""
        if now is None:
            now = now_ms()

        expires_at = None
        if self.expires_in:
            expires_at = now + self.expires_in * 1000

        return StoredTokens(
            access_token=self.access_token,
            token_type=self.token_type,
            refresh_token=self.refresh_token,
            expires_at=expires_at,
        )


@dataclass(frozen=True)
class AccessTokenResult:
    """A usable credential returned by the token resolution policy."""

    access_token: str = field(repr=False)
    token_type: str
    expires_at: int | None = None
    refreshed: bool = False
    from_env: bool = False

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"
