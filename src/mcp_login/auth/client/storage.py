"""File-based OAuth state storage with environment variable support for CI/CD.

Persists tokens, client identity and discovered server metadata per protected
server origin. Each origin gets its own directory holding ``tokens.json``,
``client.json`` and ``server.json``; together they form one logical record.

Default locations:
    - Windows: %LOCALAPPDATA%\\mcp-login\\{server_key}\\
    - Linux: $XDG_STATE_HOME/mcp-login/{server_key}/ when set
    - Otherwise: ~/.local/state/mcp-login/{server_key}/
"""

from __future__ import annotations

import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar
from urllib.parse import urlparse

from pydantic import BaseModel, ValidationError

from mcp_login.auth.client.config import (
    DEFAULT_EXPIRY_BUFFER_MS,
    ENV_ACCESS_TOKEN,
    ENV_REFRESH_TOKEN,
    ENV_TOKEN_EXPIRES_AT,
    ENV_TOKEN_TYPE,
)
from mcp_login.auth.client.models.discovery import StoredServerMetadata
from mcp_login.auth.client.models.errors import CacheError
from mcp_login.auth.client.models.registration import StoredClientInfo
from mcp_login.auth.client.models.tokens import StoredTokens

logger = logging.getLogger(__name__)

APP_DIR_NAME = "mcp-login"

TOKENS_FILE = "tokens.json"
CLIENT_FILE = "client.json"
SERVER_FILE = "server.json"

ModelT = TypeVar("ModelT", bound=BaseModel)


def generate_server_key(server_url: str) -> str:
    """Generate a filesystem-safe key from a server URL's origin.

    Example:
        generate_server_key("https://api.example.com:8080/mcp")
        # 'api.example.com_8080'
    """
    parsed = urlparse(server_url)
    if not parsed.hostname:
        raise ValueError(f"Cannot derive a storage key from URL: {server_url}")

    key = parsed.hostname
    if parsed.port:
        key += f"_{parsed.port}"

    return re.sub(r"[^a-zA-Z0-9_.-]", "_", key)


def get_base_state_dir() -> Path:
    """Get the base directory holding every server's OAuth state."""
    if sys.platform == "win32":
        local_app_data = os.environ.get("LOCALAPPDATA")
        if local_app_data:
            return Path(local_app_data) / APP_DIR_NAME
        return Path.home() / "AppData" / "Local" / APP_DIR_NAME

    xdg_state_home = os.environ.get("XDG_STATE_HOME")
    if sys.platform.startswith("linux") and xdg_state_home:
        return Path(xdg_state_home) / APP_DIR_NAME

    return Path.home() / ".local" / "state" / APP_DIR_NAME


def get_state_dir(server_url: str, state_dir: Path | str | None = None) -> Path:
    """Get the state directory for one server.

    Args:
        server_url: Protected server URL
        state_dir: Optional custom base directory
    """
    base = Path(state_dir) if state_dir is not None else get_base_state_dir()
    return base / generate_server_key(server_url)


def load_tokens_from_env() -> StoredTokens | None:
    """Read a pre-issued token from environment variables.

    Returns:
        StoredTokens if MCP_ACCESS_TOKEN is set, None otherwise
    """
    access_token = os.environ.get(ENV_ACCESS_TOKEN)
    if not access_token:
        return None

    expires_at = None
    expires_at_raw = os.environ.get(ENV_TOKEN_EXPIRES_AT)
    if expires_at_raw:
        try:
            expires_at = int(expires_at_raw)
        except ValueError:
            logger.warning(
                f"Ignoring non-numeric {ENV_TOKEN_EXPIRES_AT} value: {expires_at_raw!r}"
            )

    return StoredTokens(
        access_token=access_token,
        refresh_token=os.environ.get(ENV_REFRESH_TOKEN) or None,
        token_type=os.environ.get(ENV_TOKEN_TYPE) or "Bearer",
        expires_at=expires_at,
    )


class FileOAuthStorage:
    """File-based token, client and metadata cache for one protected server.

    Writes are atomic (temporary file then rename) and owner-only: the
    directory is created 0700 and files 0600. All writes replace the whole
    file; there is no cross-process locking.
    """

    def __init__(self, server_url: str, state_dir: Path | str | None = None):
        self.server_url = server_url
        self.state_dir = get_state_dir(server_url, state_dir)

    @property
    def tokens_path(self) -> Path:
        return self.state_dir / TOKENS_FILE

    @property
    def client_path(self) -> Path:
        return self.state_dir / CLIENT_FILE

    @property
    def server_metadata_path(self) -> Path:
        return self.state_dir / SERVER_FILE

    def load_tokens(self) -> StoredTokens | None:
        return self._load(self.tokens_path, StoredTokens)

    def save_tokens(self, tokens: StoredTokens) -> None:
        self._write(self.tokens_path, tokens)
        logger.debug(f"Saved tokens to {self.tokens_path}")

    def delete_tokens(self) -> None:
        self._delete(self.tokens_path)

    def load_client(self) -> StoredClientInfo | None:
        return self._load(self.client_path, StoredClientInfo)

    def save_client(self, client: StoredClientInfo) -> None:
        self._write(self.client_path, client)
        logger.debug(f"Saved client registration to {self.client_path}")

    def load_server_metadata(self) -> StoredServerMetadata | None:
        """Load cached server metadata.

        Freshness is not checked here; callers apply the TTL.
        """
        return self._load(self.server_metadata_path, StoredServerMetadata)

    def save_server_metadata(self, metadata: StoredServerMetadata) -> None:
        self._write(self.server_metadata_path, metadata)
        logger.debug(f"Saved server metadata to {self.server_metadata_path}")

    def has_valid_token(self, buffer_ms: int = DEFAULT_EXPIRY_BUFFER_MS) -> bool:
        """Check if a non-expired access token is cached."""
        tokens = self.load_tokens()
        return tokens is not None and tokens.is_valid(buffer_ms)

    def clear(self) -> None:
        """Delete every cached record for this server."""
        for path in (self.tokens_path, self.client_path, self.server_metadata_path):
            self._delete(path)

        # Leave unrelated files alone; only drop the directory once empty
        if self.state_dir.is_dir() and not any(self.state_dir.iterdir()):
            self.state_dir.rmdir()

        logger.info(f"Cleared stored OAuth state for {self.server_url}")

    def _load(self, path: Path, model: type[ModelT]) -> ModelT | None:
        """Load a JSON record, returning None if the file does not exist."""
        try:
            content = path.read_bytes()
        except FileNotFoundError:
            return None

        try:
            return model.model_validate_json(content)
        except (ValidationError, UnicodeDecodeError) as e:
            raise CacheError(f"Corrupt OAuth state file {path}: {e}") from e

    def _write(self, path: Path, record: BaseModel) -> None:
        """Write a record atomically with owner-only permissions."""
        self.state_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

        tmp_path = path.with_name(path.name + ".tmp")
        content = record.model_dump_json(indent=2, exclude_none=True)

        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)

        os.replace(tmp_path, path)

    def _delete(self, path: Path) -> None:
        path.unlink(missing_ok=True)


@dataclass(frozen=True)
class KnownServer:
    """A server with OAuth state on disk."""

    key: str
    url: str  # Best-effort reconstruction from the key
    has_tokens: bool


def list_known_servers(state_dir: Path | str | None = None) -> list[KnownServer]:
    """List every server with a state directory under the base directory."""
    base = Path(state_dir) if state_dir is not None else get_base_state_dir()
    if not base.is_dir():
        return []

    servers = []
    for entry in sorted(base.iterdir()):
        if not entry.is_dir():
            continue

        host, _, port = entry.name.partition("_")
        url = f"https://{host}:{port}" if port else f"https://{host}"
        servers.append(
            KnownServer(
                key=entry.name,
                url=url,
                has_tokens=(entry / TOKENS_FILE).is_file(),
            )
        )

    return servers


def inject_tokens(
    server_url: str, tokens: StoredTokens, state_dir: Path | str | None = None
) -> None:
    """Write tokens into storage programmatically (CI/CD setup)."""
    FileOAuthStorage(server_url, state_dir).save_tokens(tokens)


def load_tokens(
    server_url: str, state_dir: Path | str | None = None
) -> StoredTokens | None:
    """Load stored tokens for a server."""
    return FileOAuthStorage(server_url, state_dir).load_tokens()


def has_valid_tokens(
    server_url: str,
    state_dir: Path | str | None = None,
    buffer_ms: int = DEFAULT_EXPIRY_BUFFER_MS,
) -> bool:
    """Check whether non-expired tokens are stored for a server."""
    return FileOAuthStorage(server_url, state_dir).has_valid_token(buffer_ms)
