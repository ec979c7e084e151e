"""OAuth 2.1 server discovery primitive.

Implements RFC 9728 (Protected Resource Metadata) and RFC 8414
(Authorization Server Metadata) discovery to find OAuth endpoints and capabilities
for MCP servers.
"""

from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from mcp_login.auth.client.config import (
    DEFAULT_HTTP_TIMEOUT,
    MCP_PROTOCOL_VERSION,
    PROTOCOL_VERSION_HEADER,
)
from mcp_login.auth.client.models.discovery import (
    AuthorizationServerMetadata,
    DiscoveredAuthorizationServer,
    ProtectedResourceDiscoveryResult,
    ProtectedResourceMetadata,
)
from mcp_login.auth.client.models.errors import (
    AuthorizationServerMetadataError,
    DiscoveryError,
    ProtectedResourceMetadataError,
)

logger = logging.getLogger(__name__)

PROTECTED_RESOURCE_WELL_KNOWN = "/.well-known/oauth-protected-resource"
AUTHORIZATION_SERVER_WELL_KNOWN = "/.well-known/oauth-authorization-server"


class OAuth2Discovery:
    """Handles OAuth 2.1 server discovery for MCP authentication.

    Implements the two-step discovery process:
    1. Protected Resource Metadata (RFC 9728) - find authorization servers
    2. Authorization Server Metadata (RFC 8414) - find OAuth endpoints

    Protected resource discovery is path-aware with a single fallback to the
    origin-level document on 404. Authorization server discovery has no
    fallback. Both operations are read-only; callers cache the results.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize OAuth discovery.

        Args:
            timeout: HTTP request timeout in seconds
            http_client: Optional shared client; a private one is created otherwise
        """
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def discover_protected_resource(
        self, server_url: str
    ) -> ProtectedResourceDiscoveryResult:
        """Discover protected resource metadata per RFC 9728 Section 3.1.

        Tries ``{origin}/.well-known/oauth-protected-resource{path}`` first and
        falls back to ``{origin}/.well-known/oauth-protected-resource`` only
        when the path-aware document returns 404.

        Args:
            server_url: MCP server URL

        Returns:
            Discovery result recording which URL answered

        Raises:
            ProtectedResourceMetadataError: If discovery fails
        """
        path_aware_url, base_url = self._build_protected_resource_urls(server_url)

        if path_aware_url is None:
            metadata = await self._fetch_protected_resource_metadata(base_url)
            return ProtectedResourceDiscoveryResult(
                metadata=metadata,
                discovery_url=base_url,
                used_path_aware_discovery=False,
            )

        try:
            metadata = await self._fetch_protected_resource_metadata(path_aware_url)
            return ProtectedResourceDiscoveryResult(
                metadata=metadata,
                discovery_url=path_aware_url,
                used_path_aware_discovery=True,
            )
        except ProtectedResourceMetadataError as e:
            if e.status != 404:
                raise

        logger.debug(
            f"No path-aware metadata at {path_aware_url}, trying {base_url}"
        )
        metadata = await self._fetch_protected_resource_metadata(base_url)
        return ProtectedResourceDiscoveryResult(
            metadata=metadata,
            discovery_url=base_url,
            used_path_aware_discovery=False,
        )

    async def discover_from_401(
        self, response: httpx.Response
    ) -> ProtectedResourceDiscoveryResult:
        """Discover protected resource metadata from a 401 Unauthorized response.

        Uses the ``resource_metadata`` parameter of the WWW-Authenticate header
        when present, otherwise falls back to well-known discovery against the
        request URL.

        Args:
            response: 401 response from MCP server

        Raises:
            DiscoveryError: If discovery fails
        """
        if response.status_code != 401:
            raise DiscoveryError(
                f"Expected 401 response, got {response.status_code}",
                status=response.status_code,
            )

        resource_metadata_url = self._extract_resource_metadata_from_www_auth(response)
        if not resource_metadata_url:
            logger.debug("No resource metadata URL in WWW-Authenticate header")
            return await self.discover_protected_resource(str(response.request.url))

        logger.debug(
            f"Found resource metadata URL in WWW-Authenticate: {resource_metadata_url}"
        )
        metadata = await self._fetch_protected_resource_metadata(resource_metadata_url)
        return ProtectedResourceDiscoveryResult(
            metadata=metadata,
            discovery_url=resource_metadata_url,
            used_path_aware_discovery=False,
        )

    async def discover_authorization_server(
        self, issuer_url: str
    ) -> DiscoveredAuthorizationServer:
        """Discover authorization server metadata per RFC 8414.

        Args:
            issuer_url: Authorization server issuer URL

        Returns:
            Authorization server metadata tagged with the issuer

        Raises:
            AuthorizationServerMetadataError: If the document cannot be fetched,
                parsed, or does not belong to the issuer
        """
        metadata_url = self._build_authorization_server_url(issuer_url)
        logger.debug(f"Fetching authorization server metadata from: {metadata_url}")

        try:
            response = await self._http_client.get(
                metadata_url, headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise AuthorizationServerMetadataError(
                f"Failed to fetch authorization server metadata from "
                f"{metadata_url}: {e}",
                url=metadata_url,
            ) from e

        if not 200 <= response.status_code < 300:
            raise AuthorizationServerMetadataError(
                f"Authorization server discovery failed: {response.status_code} "
                f"{response.reason_phrase} ({metadata_url})",
                status=response.status_code,
                url=metadata_url,
            )

        try:
            metadata = AuthorizationServerMetadata.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise AuthorizationServerMetadataError(
                f"Invalid authorization server metadata from {metadata_url}: {e}",
                status=response.status_code,
                url=metadata_url,
            ) from e

        if metadata.issuer.rstrip("/") != issuer_url.rstrip("/"):
            raise AuthorizationServerMetadataError(
                f"Authorization server metadata issuer {metadata.issuer!r} does "
                f"not match expected issuer {issuer_url!r}",
                status=response.status_code,
                url=metadata_url,
            )

        logger.debug(f"Found authorization server: {metadata.issuer}")
        return DiscoveredAuthorizationServer(issuer=issuer_url, server=metadata)

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            PROTOCOL_VERSION_HEADER: MCP_PROTOCOL_VERSION,
        }

    def _extract_resource_metadata_from_www_auth(
        self, response: httpx.Response
    ) -> str | None:
        """Extract resource metadata URL from WWW-Authenticate header.

        RFC 9728 Section 5.1: WWW-Authenticate response should contain
        resource_metadata parameter pointing to the metadata URL.
        """
        www_auth_header = response.headers.get("WWW-Authenticate")
        if not www_auth_header:
            return None

        # Pattern matches: resource_metadata="url" or resource_metadata=url (unquoted)
        pattern = r'resource_metadata=(?:"([^"]+)"|([^\s,]+))'
        match = re.search(pattern, www_auth_header)

        if match:
            return match.group(1) or match.group(2)

        return None

    async def _fetch_protected_resource_metadata(
        self, metadata_url: str
    ) -> ProtectedResourceMetadata:
        """Fetch and parse protected resource metadata.

        Raises:
            ProtectedResourceMetadataError: If fetch or parsing fails. The
                ``status`` attribute is set when the server answered.
        """
        logger.debug(f"Fetching protected resource metadata from: {metadata_url}")

        try:
            response = await self._http_client.get(
                metadata_url, headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise ProtectedResourceMetadataError(
                f"Failed to fetch protected resource metadata from "
                f"{metadata_url}: {e}",
                url=metadata_url,
            ) from e

        if not 200 <= response.status_code < 300:
            raise ProtectedResourceMetadataError(
                f"Protected resource discovery failed: {response.status_code} "
                f"{response.reason_phrase} ({metadata_url})",
                status=response.status_code,
                url=metadata_url,
            )

        try:
            data: Any = response.json()
        except ValueError as e:
            raise ProtectedResourceMetadataError(
                f"Protected resource metadata from {metadata_url} is not JSON: {e}",
                status=response.status_code,
                url=metadata_url,
            ) from e

        if not isinstance(data, dict) or not data.get("resource"):
            raise ProtectedResourceMetadataError(
                'Invalid protected resource metadata: missing required "resource" '
                f"field ({metadata_url})",
                status=response.status_code,
                url=metadata_url,
            )

        try:
            metadata = ProtectedResourceMetadata.model_validate(data)
        except ValidationError as e:
            raise ProtectedResourceMetadataError(
                f"Invalid protected resource metadata from {metadata_url}: {e}",
                status=response.status_code,
                url=metadata_url,
            ) from e

        logger.debug(f"Found protected resource: {metadata.resource}")
        return metadata

    def _build_protected_resource_urls(
        self, server_url: str
    ) -> tuple[str | None, str]:
        """Build the path-aware and base protected resource metadata URLs.

        The path-aware URL is None when the server URL has no path, since it
        would coincide with the base URL.
        """
        parsed = urlparse(server_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        base_url = f"{origin}{PROTECTED_RESOURCE_WELL_KNOWN}"

        path = parsed.path.rstrip("/")
        if not path:
            return None, base_url

        return f"{origin}{PROTECTED_RESOURCE_WELL_KNOWN}{path}", base_url

    def _build_authorization_server_url(self, issuer_url: str) -> str:
        """Build the RFC 8414 Section 3.1 metadata URL for an issuer.

        The well-known segment is inserted between the host and the issuer
        path, which is omitted for root issuers.
        """
        parsed = urlparse(issuer_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        path = parsed.path.rstrip("/")
        return f"{origin}{AUTHORIZATION_SERVER_WELL_KNOWN}{path}"
