"""Configuration for the CLI OAuth client.

Holds the caller-facing settings for a single protected server plus the
protocol constants shared by discovery, registration and storage.
"""

from __future__ import annotations

from pathlib import Path
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

MCP_PROTOCOL_VERSION = "2025-06-18"
PROTOCOL_VERSION_HEADER = "MCP-Protocol-Version"

DEFAULT_CLIENT_NAME = "mcp-login"
DEFAULT_SCOPES = ["openid"]
DEFAULT_CALLBACK_PATH = "/callback"
DEFAULT_FLOW_TIMEOUT = 300.0  # seconds
DEFAULT_HTTP_TIMEOUT = 30.0  # seconds

# Discovered server metadata is reused for one day
METADATA_TTL_MS = 24 * 60 * 60 * 1000
# Tokens this close to expiry are treated as expired
DEFAULT_EXPIRY_BUFFER_MS = 60_000

ENV_ACCESS_TOKEN = "MCP_ACCESS_TOKEN"
ENV_REFRESH_TOKEN = "MCP_REFRESH_TOKEN"
ENV_TOKEN_TYPE = "MCP_TOKEN_TYPE"
ENV_TOKEN_EXPIRES_AT = "MCP_TOKEN_EXPIRES_AT"


class OAuthClientConfig(BaseModel):
    """Settings for authenticating against one protected server."""

    server_url: str

    # Requested scopes; discovered scopes are used when omitted
    scopes: list[str] | None = None

    # Overrides the platform state directory
    state_dir: Path | None = None

    # Out-of-band registration skips DCR entirely
    client_id: str | None = None
    client_secret: str | None = None

    callback_port: int = Field(default=0, ge=0, le=65535)
    callback_path: str = DEFAULT_CALLBACK_PATH
    timeout: float = Field(default=DEFAULT_FLOW_TIMEOUT, gt=0)
    http_timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0)
    client_name: str = DEFAULT_CLIENT_NAME

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Server URL must be an absolute http(s) URL: {v}")
        return v

    @field_validator("callback_path")
    @classmethod
    def validate_callback_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Callback path must start with '/': {v}")
        return v
