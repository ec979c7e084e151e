"""Complete OAuth 2.1 client for command-line MCP authentication.

Resolves a usable access token for one protected server, preferring the
cheapest source available:

1. Environment variables (CI/CD)
2. Cached, unexpired tokens
3. Refresh of cached tokens
4. The interactive browser flow
"""

from __future__ import annotations

import logging

import httpx

from mcp_login.auth.client.config import OAuthClientConfig
from mcp_login.auth.client.models.errors import OAuth2Error
from mcp_login.auth.client.models.tokens import AccessTokenResult, StoredTokens
from mcp_login.auth.client.primitives.discovery import OAuth2Discovery
from mcp_login.auth.client.services.flow import OAuth2FlowManager
from mcp_login.auth.client.services.presenter import AuthorizationPresenter
from mcp_login.auth.client.services.registration import OAuth2Registration
from mcp_login.auth.client.services.tokens import OAuth2TokenManager
from mcp_login.auth.client.storage import FileOAuthStorage, load_tokens_from_env

module_logger = logging.getLogger(__name__)


class OAuth2Client:
    """OAuth 2.1 client for one protected MCP server.

    Orchestrates token resolution and the full flow from discovery through
    token exchange, providing a high-level interface for CLI tools.

    Usage:
        async with OAuth2Client(OAuthClientConfig(server_url=url)) as client:
            result = await client.get_access_token()
            headers = {"Authorization": result.authorization_header}
    """

    def __init__(
        self,
        config: OAuthClientConfig,
        presenter: AuthorizationPresenter | None = None,
        logger: logging.Logger | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize OAuth client.

        Args:
            config: Client settings for the protected server
            presenter: How to show the authorization URL; chosen per flow
                when omitted
            logger: Logger for diagnostics
            http_client: Optional shared HTTP client; owned by the caller
        """
        self.config = config
        self.logger = logger or module_logger

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=config.http_timeout
        )

        self.storage = FileOAuthStorage(config.server_url, config.state_dir)
        self.discovery = OAuth2Discovery(
            timeout=config.http_timeout, http_client=self._http_client
        )
        self.registration = OAuth2Registration(
            storage=self.storage,
            client_name=config.client_name,
            client_id=config.client_id,
            client_secret=config.client_secret,
            timeout=config.http_timeout,
            http_client=self._http_client,
        )
        self.token_manager = OAuth2TokenManager(
            timeout=config.http_timeout, http_client=self._http_client
        )
        self.flow_manager = OAuth2FlowManager(
            config=config,
            storage=self.storage,
            discovery=self.discovery,
            registration=self.registration,
            token_manager=self.token_manager,
            presenter=presenter,
            logger=self.logger,
        )

    async def get_access_token(self) -> AccessTokenResult:
        """Get a valid access token, authenticating if necessary.

        Raises:
            OAuth2Error: If the interactive flow is needed and fails
        """
        result = await self._resolve_without_interaction()
        if result is not None:
            return result

        self.logger.debug("Performing full OAuth authentication")
        return await self.authenticate()

    async def try_get_access_token(self) -> AccessTokenResult | None:
        """Get a valid access token without user interaction.

        Returns:
            The token, or None when only the interactive flow could provide one
        """
        return await self._resolve_without_interaction()

    async def authenticate(self) -> AccessTokenResult:
        """Force a new interactive authentication flow."""
        tokens = await self.flow_manager.authenticate()
        return _to_result(tokens)

    def has_stored_credentials(self) -> bool:
        """Check if cached tokens exist, whether or not they have expired."""
        tokens = self.storage.load_tokens()
        return tokens is not None and bool(tokens.access_token)

    def clear_credentials(self) -> None:
        """Delete cached tokens, client registration and server metadata."""
        self.storage.clear()
        self.logger.debug("Cleared stored credentials")

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> OAuth2Client:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _resolve_without_interaction(self) -> AccessTokenResult | None:
        env_tokens = load_tokens_from_env()
        if env_tokens is not None:
            self.logger.debug("Using tokens from environment variables")
            return _to_result(env_tokens, from_env=True)

        stored = self.storage.load_tokens()
        if stored is None or not stored.access_token:
            return None

        if stored.is_valid():
            self.logger.debug("Using cached tokens from storage")
            return _to_result(stored)

        if not stored.can_refresh():
            return None

        self.logger.debug("Token expired, attempting refresh")
        try:
            refreshed = await self.flow_manager.refresh_stored_token(stored)
        except OAuth2Error as e:
            self.logger.warning(f"Token refresh failed, will re-authenticate: {e}")
            return None

        return _to_result(refreshed, refreshed=True)


def _to_result(
    tokens: StoredTokens, refreshed: bool = False, from_env: bool = False
) -> AccessTokenResult:
    return AccessTokenResult(
        access_token=tokens.access_token,
        token_type=tokens.token_type,
        expires_at=tokens.expires_at,
        refreshed=refreshed,
        from_env=from_env,
    )
