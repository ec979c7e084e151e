"""OAuth 2.1 authorization flow orchestration service.

Coordinates discovery, client registration, the PKCE authorization code flow
through the loopback listener, and token refresh for one protected server.
"""

from __future__ import annotations

import logging

from mcp_login.auth.client.config import DEFAULT_SCOPES, OAuthClientConfig
from mcp_login.auth.client.models.discovery import StoredServerMetadata
from mcp_login.auth.client.models.errors import CacheError, DiscoveryError
from mcp_login.auth.client.models.flow import AuthorizationRequest
from mcp_login.auth.client.models.tokens import (
    RefreshTokenRequest,
    StoredTokens,
    TokenRequest,
    now_ms,
)
from mcp_login.auth.client.primitives.discovery import OAuth2Discovery
from mcp_login.auth.client.primitives.pkce import generate_pkce, generate_state
from mcp_login.auth.client.services.callback import LOOPBACK_HOST, CallbackListener
from mcp_login.auth.client.services.presenter import (
    AuthorizationPresenter,
    select_presenter,
)
from mcp_login.auth.client.services.registration import OAuth2Registration
from mcp_login.auth.client.services.tokens import OAuth2TokenManager
from mcp_login.auth.client.storage import FileOAuthStorage

module_logger = logging.getLogger(__name__)


class OAuth2FlowManager:
    """Orchestrates OAuth 2.1 authorization code flows for one server.

    Handles the complete flow including:
    - Metadata discovery with a 24 hour cache
    - Client identity resolution (static, cached or registered)
    - PKCE and state generation
    - Presenting the authorization URL and awaiting the redirect
    - Code exchange and persistence of the resulting tokens
    """

    def __init__(
        self,
        config: OAuthClientConfig,
        storage: FileOAuthStorage,
        discovery: OAuth2Discovery,
        registration: OAuth2Registration,
        token_manager: OAuth2TokenManager,
        presenter: AuthorizationPresenter | None = None,
        logger: logging.Logger | None = None,
    ):
        """Initialize the flow manager.

        Args:
            config: Client settings for the protected server
            storage: Per-server cache
            discovery: Metadata discovery primitive
            registration: Client identity service
            token_manager: Token endpoint service
            presenter: Fixed presenter; chosen per flow when omitted
            logger: Logger for flow diagnostics
        """
        self.config = config
        self.storage = storage
        self.discovery = discovery
        self.registration = registration
        self.token_manager = token_manager
        self.presenter = presenter
        self.logger = logger or module_logger

    @property
    def registration_redirect_uri(self) -> str:
        """Redirect URI sent during client registration.

        Registration happens before the listener binds, so an OS-assigned
        port shows up here as port 0.
        """
        return (
            f"http://{LOOPBACK_HOST}:{self.config.callback_port}"
            f"{self.config.callback_path}"
        )

    async def discover_servers(self) -> StoredServerMetadata:
        """Return server metadata, discovering it when no fresh copy is cached.

        Raises:
            DiscoveryError: If discovery fails
        """
        cached = self.storage.load_server_metadata()
        if cached is not None:
            if cached.is_fresh():
                self.logger.debug("Using cached server metadata")
                return cached
            self.logger.debug("Cached server metadata is stale, rediscovering")

        self.logger.debug(f"Discovering protected resource: {self.config.server_url}")
        result = await self.discovery.discover_protected_resource(
            self.config.server_url
        )
        protected_resource = result.metadata

        if not protected_resource.authorization_servers:
            raise DiscoveryError(
                "No authorization servers found in protected resource metadata",
                url=result.discovery_url,
            )

        issuer_url = protected_resource.authorization_servers[0]
        self.logger.debug(f"Discovering authorization server: {issuer_url}")
        auth_server = await self.discovery.discover_authorization_server(issuer_url)

        metadata = StoredServerMetadata(
            protected_resource=protected_resource,
            auth_server=auth_server,
            discovered_at=now_ms(),
        )
        self.storage.save_server_metadata(metadata)

        return metadata

    def resolve_scopes(self, metadata: StoredServerMetadata) -> list[str]:
        """Pick the scopes to request.

        Priority: configured scopes, then the protected resource's
        ``scopes_supported``, then the authorization server's, then openid.
        """
        if self.config.scopes is not None:
            return list(self.config.scopes)
        if metadata.protected_resource.scopes_supported:
            return list(metadata.protected_resource.scopes_supported)
        if metadata.auth_server.server.scopes_supported:
            return list(metadata.auth_server.server.scopes_supported)
        return list(DEFAULT_SCOPES)

    async def authenticate(self) -> StoredTokens:
        """Run the interactive authorization code flow.

        Returns:
            Newly issued tokens, already persisted

        Raises:
            DiscoveryError: If discovery fails
            RegistrationError: If no client identity can be obtained
            CallbackError: If the redirect is rejected or never arrives
            TokenExchangeError: If the code exchange fails
        """
        self.logger.info(f"Starting OAuth authentication with {self.config.server_url}")

        metadata = await self.discover_servers()
        auth_server = metadata.auth_server
        client = await self.registration.get_or_register_client(
            auth_server, self.registration_redirect_uri
        )

        pkce_params = generate_pkce()
        state = generate_state()

        listener = CallbackListener(
            state,
            port=self.config.callback_port,
            callback_path=self.config.callback_path,
            timeout=self.config.timeout,
        )
        async with listener:
            redirect_uri = listener.redirect_uri
            resource = metadata.protected_resource.resource

            auth_request = AuthorizationRequest(
                authorization_endpoint=auth_server.server.authorization_endpoint,
                client_id=client.client_id,
                redirect_uri=redirect_uri,
                scopes=tuple(self.resolve_scopes(metadata)),
                pkce=pkce_params,
                state=state,
                resource=resource,
            )

            presenter = self.presenter or select_presenter()
            await presenter.present(auth_request.build_authorization_url())

            self.logger.debug("Waiting for OAuth callback")
            code = await listener.wait_for_code()

        token_request = TokenRequest(
            token_endpoint=auth_server.server.token_endpoint,
            code=code,
            redirect_uri=redirect_uri,
            client_id=client.client_id,
            client_secret=client.client_secret,
            code_verifier=pkce_params.code_verifier,
            resource=resource,
        )
        token_response = await self.token_manager.exchange_code_for_token(token_request)

        tokens = token_response.to_stored_tokens()
        self.storage.save_tokens(tokens)

        self.logger.info(f"Successfully authenticated with {self.config.server_url}")
        return tokens

    async def refresh_stored_token(self, tokens: StoredTokens) -> StoredTokens:
        """Exchange a stored refresh token for new tokens.

        Uses cached server metadata only; a missing cache is an error rather
        than a reason to rediscover.

        Raises:
            CacheError: If no refresh token or cached metadata is available
            TokenRefreshError: If the token endpoint rejects the refresh
        """
        if not tokens.refresh_token:
            raise CacheError("No refresh token available")

        metadata = self.storage.load_server_metadata()
        if metadata is None:
            raise CacheError("No cached server metadata for refresh")

        auth_server = metadata.auth_server
        client = await self.registration.get_or_register_client(
            auth_server, self.registration_redirect_uri
        )

        refresh_request = RefreshTokenRequest(
            token_endpoint=auth_server.server.token_endpoint,
            refresh_token=tokens.refresh_token,
            client_id=client.client_id,
            client_secret=client.client_secret,
            resource=metadata.protected_resource.resource,
        )
        token_response = await self.token_manager.refresh_access_token(refresh_request)

        new_tokens = token_response.to_stored_tokens()
        if new_tokens.refresh_token is None:
            # Servers that do not rotate refresh tokens omit them
            new_tokens.refresh_token = tokens.refresh_token
        self.storage.save_tokens(new_tokens)

        self.logger.info("Successfully refreshed access token")
        return new_tokens
