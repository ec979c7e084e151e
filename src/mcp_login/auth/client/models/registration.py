"""Client registration models for OAuth 2.0 Dynamic Client Registration.

Contains the client metadata sent to the registration endpoint (RFC 7591)
and the client identity persisted afterwards.
"""

from __future__ import annotations

from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


class ClientMetadata(BaseModel):
    """OAuth 2.0 Client Metadata for dynamic registration (RFC 7591)."""

    client_name: str
    redirect_uris: list[str] = Field(min_length=1)

    # Public client: PKCE replaces the client secret
    token_endpoint_auth_method: str = "none"
    grant_types: list[str] = Field(default=["authorization_code", "refresh_token"])
    response_types: list[str] = Field(default=["code"])

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v: list[str]) -> list[str]:
        """Validate redirect URIs meet OAuth 2.1 security requirements."""
        for uri in v:
            parsed = urlparse(uri)
            # HTTPS, or plain HTTP on a loopback address (RFC 8252 Section 7.3)
            secure = parsed.scheme == "https" or (
                parsed.scheme == "http" and parsed.hostname in LOOPBACK_HOSTS
            )
            if not secure:
                raise ValueError(f"Redirect URI must use HTTPS or loopback: {uri}")
        return v


class StoredClientInfo(BaseModel):
    """Client identity from static configuration or registration response."""

    client_id: str = Field(min_length=1)
    client_secret: str | None = None  # None for public clients
    client_id_issued_at: int | None = None
    client_secret_expires_at: int | None = None
