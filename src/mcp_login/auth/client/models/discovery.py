"""Discovery-related models for OAuth 2.1 server metadata.

Contains models for Protected Resource Metadata (RFC 9728) and
Authorization Server Metadata (RFC 8414) discovery, plus the cached
combination of both.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mcp_login.auth.client.config import METADATA_TTL_MS


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728).

    Metadata returned by MCP servers to indicate their authorization servers
    and resource configuration.
    """

    model_config = ConfigDict(extra="allow")

    resource: str = Field(min_length=1)
    authorization_servers: list[str] | None = None

    # Optional fields from RFC 9728
    scopes_supported: list[str] | None = None
    bearer_methods_supported: list[str] | None = None
    resource_documentation: str | None = None
    resource_signing_alg_values_supported: list[str] | None = None


class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414).

    Metadata returned by authorization servers describing their endpoints
    and supported capabilities.
    """

    model_config = ConfigDict(extra="allow")

    issuer: str

    # Required for authorization code flow (our use case)
    authorization_endpoint: str
    token_endpoint: str

    response_types_supported: list[str] = Field(default=["code"])

    # PKCE support (required for OAuth 2.1)
    code_challenge_methods_supported: list[str] = Field(default=["S256"])

    # Dynamic registration (RFC 7591)
    registration_endpoint: str | None = None

    # Optional but commonly used
    revocation_endpoint: str | None = None
    introspection_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    grant_types_supported: list[str] = Field(
        default=["authorization_code", "implicit"]
    )
    token_endpoint_auth_methods_supported: list[str] | None = None

    @field_validator("code_challenge_methods_supported")
    @classmethod
    def validate_pkce_support(cls, v: list[str]) -> list[str]:
        if "S256" not in v:
            raise ValueError("Authorization server must support S256 PKCE method")
        return v


class DiscoveredAuthorizationServer(BaseModel):
    """Authorization server metadata tagged with the issuer it was fetched for."""

    issuer: str
    server: AuthorizationServerMetadata


@dataclass(frozen=True)
class ProtectedResourceDiscoveryResult:
    """Outcome of protected resource discovery.

    Records which well-known URL answered so fallback behaviour can be
    diagnosed.
    """

    metadata: ProtectedResourceMetadata
    discovery_url: str
    used_path_aware_discovery: bool


class StoredServerMetadata(BaseModel):
    """Cached discovery results for one protected server."""

    protected_resource: ProtectedResourceMetadata
    auth_server: DiscoveredAuthorizationServer
    discovered_at: int  # Unix milliseconds

    def is_fresh(
        self, now_ms: int | None = None, ttl_ms: int = METADATA_TTL_MS
    ) -> bool:
        """Check whether the metadata is still within its time-to-live."""
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return now_ms - self.discovered_at < ttl_ms
