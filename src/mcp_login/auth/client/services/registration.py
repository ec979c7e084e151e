"""OAuth 2.1 dynamic client registration service.

Implements RFC 7591 (OAuth 2.0 Dynamic Client Registration Protocol)
to automatically register CLI clients with authorization servers, and the
policy that decides whether registration is needed at all.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from mcp_login.auth.client.config import (
    DEFAULT_CLIENT_NAME,
    DEFAULT_HTTP_TIMEOUT,
    MCP_PROTOCOL_VERSION,
    PROTOCOL_VERSION_HEADER,
)
from mcp_login.auth.client.models.discovery import DiscoveredAuthorizationServer
from mcp_login.auth.client.models.errors import RegistrationError
from mcp_login.auth.client.models.registration import ClientMetadata, StoredClientInfo
from mcp_login.auth.client.storage import FileOAuthStorage

logger = logging.getLogger(__name__)


class OAuth2Registration:
    """Obtains a client identity for the authorization flow.

    Resolution order:
    1. A statically configured client ID (out-of-band registration)
    2. A client identity cached by an earlier registration
    3. Dynamic registration against the authorization server
    """

    def __init__(
        self,
        storage: FileOAuthStorage,
        client_name: str = DEFAULT_CLIENT_NAME,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize OAuth registration.

        Args:
            storage: Cache holding the registered client identity
            client_name: Human-readable name sent during registration
            client_id: Pre-registered client ID; skips DCR when provided
            client_secret: Secret for the pre-registered client
            timeout: HTTP request timeout in seconds
            http_client: Optional shared client
        """
        self.storage = storage
        self.client_name = client_name
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def get_or_register_client(
        self, auth_server: DiscoveredAuthorizationServer, redirect_uri: str
    ) -> StoredClientInfo:
        """Return a usable client identity, registering one if necessary.

        Cached identities have no time-to-live and are returned as-is.

        Args:
            auth_server: Discovered authorization server
            redirect_uri: Redirect URI to register

        Raises:
            RegistrationError: If registration is needed but unavailable or fails
        """
        if self.client_id:
            logger.debug("Using pre-configured client ID")
            return StoredClientInfo(
                client_id=self.client_id, client_secret=self.client_secret
            )

        cached = self.storage.load_client()
        if cached is not None:
            logger.debug("Using cached client registration")
            return cached

        registration_endpoint = auth_server.server.registration_endpoint
        if not registration_endpoint:
            raise RegistrationError(
                f"Authorization server {auth_server.issuer} does not support "
                "Dynamic Client Registration (no registration_endpoint). "
                "Please provide a client_id in the configuration."
            )

        client_metadata = ClientMetadata(
            client_name=self.client_name,
            redirect_uris=[redirect_uri],
        )
        client = await self.register_client(registration_endpoint, client_metadata)
        self.storage.save_client(client)

        return client

    async def register_client(
        self,
        registration_endpoint: str,
        client_metadata: ClientMetadata,
    ) -> StoredClientInfo:
        """Register a new OAuth client with the authorization server.

        Args:
            registration_endpoint: Client registration endpoint URL
            client_metadata: Client metadata to register

        Returns:
            The issued client identity

        Raises:
            RegistrationError: If registration fails
        """
        logger.debug(f"Registering client at {registration_endpoint}")

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            PROTOCOL_VERSION_HEADER: MCP_PROTOCOL_VERSION,
        }

        try:
            response = await self._http_client.post(
                registration_endpoint,
                json=client_metadata.model_dump(exclude_none=True, mode="json"),
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise RegistrationError(
                f"HTTP error during registration at {registration_endpoint}: {e}"
            ) from e

        if not 200 <= response.status_code < 300:
            logger.error(
                f"Client registration failed with {response.status_code} "
                f"at {registration_endpoint}"
            )
            raise RegistrationError(
                f"Dynamic Client Registration failed: {response.status_code} "
                f"{response.reason_phrase}\n{response.text}",
                status=response.status_code,
                body=response.text,
            )

        return self._parse_registration_response(response, registration_endpoint)

    def _parse_registration_response(
        self, response: httpx.Response, registration_endpoint: str
    ) -> StoredClientInfo:
        try:
            response_data = response.json()
        except ValueError as e:
            raise RegistrationError(
                f"Invalid registration response format: {e}",
                status=response.status_code,
                body=response.text,
            ) from e

        if not isinstance(response_data, dict) or not response_data.get("client_id"):
            raise RegistrationError(
                "Registration response missing required client_id",
                status=response.status_code,
                body=response.text,
            )

        try:
            client = StoredClientInfo(
                client_id=response_data["client_id"],
                client_secret=response_data.get("client_secret"),
                client_id_issued_at=response_data.get("client_id_issued_at"),
                client_secret_expires_at=response_data.get("client_secret_expires_at"),
            )
        except ValidationError as e:
            raise RegistrationError(
                f"Invalid registration response format: {e}",
                status=response.status_code,
                body=response.text,
            ) from e

        logger.info(
            f"Successfully registered client {client.client_id} "
            f"at {registration_endpoint}"
        )
        return client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()
