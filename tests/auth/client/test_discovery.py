"""Tests for OAuth 2.1 metadata discovery.

Covers protected resource discovery with its single 404 fallback,
authorization server discovery, and the WWW-Authenticate entry point.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from mcp_login.auth.client.config import MCP_PROTOCOL_VERSION
from mcp_login.auth.client.models.errors import (
    AuthorizationServerMetadataError,
    DiscoveryError,
    ProtectedResourceMetadataError,
)
from mcp_login.auth.client.primitives.discovery import OAuth2Discovery

PATH_AWARE_URL = "https://api.example.com/.well-known/oauth-protected-resource/mcp"
BASE_URL = "https://api.example.com/.well-known/oauth-protected-resource"

RESOURCE_METADATA = {
    "resource": "https://api.example.com/mcp",
    "authorization_servers": ["https://auth.example.com"],
    "scopes_supported": ["mcp:read"],
}

AUTH_SERVER_METADATA = {
    "issuer": "https://auth.example.com",
    "authorization_endpoint": "https://auth.example.com/authorize",
    "token_endpoint": "https://auth.example.com/token",
    "registration_endpoint": "https://auth.example.com/register",
    "code_challenge_methods_supported": ["S256"],
    "dpop_signing_alg_values_supported": ["ES256"],
}


def make_response(status_code: int, json_data=None, reason: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.reason_phrase = reason
    response.json.return_value = json_data
    response.text = ""
    return response


class TestProtectedResourceDiscovery:
    def setup_method(self):
        self.discovery = OAuth2Discovery()
        self.discovery._http_client = AsyncMock()

    async def test_path_aware_document_is_used_when_present(self):
        # Arrange
        self.discovery._http_client.get.return_value = make_response(
            200, RESOURCE_METADATA
        )

        # Act
        result = await self.discovery.discover_protected_resource(
            "https://api.example.com/mcp"
        )

        # Assert
        assert result.metadata.resource == "https://api.example.com/mcp"
        assert result.discovery_url == PATH_AWARE_URL
        assert result.used_path_aware_discovery is True
        self.discovery._http_client.get.assert_awaited_once()

        headers = self.discovery._http_client.get.call_args[1]["headers"]
        assert headers["Accept"] == "application/json"
        assert headers["MCP-Protocol-Version"] == MCP_PROTOCOL_VERSION

    async def test_falls_back_to_base_document_on_404(self):
        # Arrange
        self.discovery._http_client.get.side_effect = [
            make_response(404, reason="Not Found"),
            make_response(200, RESOURCE_METADATA),
        ]

        # Act
        result = await self.discovery.discover_protected_resource(
            "https://api.example.com/mcp"
        )

        # Assert
        assert result.discovery_url == BASE_URL
        assert result.used_path_aware_discovery is False
        urls = [c[0][0] for c in self.discovery._http_client.get.call_args_list]
        assert urls == [PATH_AWARE_URL, BASE_URL]

    async def test_fails_when_both_documents_are_missing(self):
        # Arrange
        self.discovery._http_client.get.side_effect = [
            make_response(404, reason="Not Found"),
            make_response(404, reason="Not Found"),
        ]

        # Act & Assert
        with pytest.raises(ProtectedResourceMetadataError) as exc_info:
            await self.discovery.discover_protected_resource(
                "https://api.example.com/mcp"
            )

        assert exc_info.value.status == 404
        assert exc_info.value.url == BASE_URL
        assert self.discovery._http_client.get.await_count == 2

    @pytest.mark.parametrize("status_code", [401, 500, 503])
    async def test_non_404_failure_does_not_fall_back(self, status_code):
        # Arrange
        self.discovery._http_client.get.return_value = make_response(status_code)

        # Act & Assert
        with pytest.raises(ProtectedResourceMetadataError) as exc_info:
            await self.discovery.discover_protected_resource(
                "https://api.example.com/mcp"
            )

        assert exc_info.value.status == status_code
        self.discovery._http_client.get.assert_awaited_once()

    async def test_server_without_path_makes_single_base_attempt(self):
        # Arrange
        self.discovery._http_client.get.return_value = make_response(404)

        # Act & Assert
        with pytest.raises(ProtectedResourceMetadataError):
            await self.discovery.discover_protected_resource("https://api.example.com")

        self.discovery._http_client.get.assert_awaited_once()
        assert self.discovery._http_client.get.call_args[0][0] == BASE_URL

    async def test_trailing_slash_root_uses_base_document(self):
        self.discovery._http_client.get.return_value = make_response(
            200, RESOURCE_METADATA
        )

        result = await self.discovery.discover_protected_resource(
            "https://api.example.com/"
        )

        assert result.discovery_url == BASE_URL
        assert result.used_path_aware_discovery is False

    @pytest.mark.parametrize(
        "payload",
        [
            {"authorization_servers": ["https://auth.example.com"]},
            {"resource": ""},
            ["not", "an", "object"],
        ],
    )
    async def test_missing_resource_field_is_rejected(self, payload):
        # Arrange
        self.discovery._http_client.get.return_value = make_response(200, payload)

        # Act & Assert
        with pytest.raises(ProtectedResourceMetadataError, match='"resource"'):
            await self.discovery.discover_protected_resource(
                "https://api.example.com/mcp"
            )

        # A malformed 2xx document is not a reason to fall back
        self.discovery._http_client.get.assert_awaited_once()

    async def test_network_error_is_wrapped(self):
        # Arrange
        self.discovery._http_client.get.side_effect = httpx.ConnectError("refused")

        # Act & Assert
        with pytest.raises(ProtectedResourceMetadataError) as exc_info:
            await self.discovery.discover_protected_resource(
                "https://api.example.com/mcp"
            )

        assert exc_info.value.status is None
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    async def test_unknown_fields_are_preserved(self):
        # Arrange
        payload = {**RESOURCE_METADATA, "vendor_extension": {"tier": "gold"}}
        self.discovery._http_client.get.return_value = make_response(200, payload)

        # Act
        result = await self.discovery.discover_protected_resource(
            "https://api.example.com/mcp"
        )

        # Assert
        assert result.metadata.model_dump()["vendor_extension"] == {"tier": "gold"}


class TestAuthorizationServerDiscovery:
    def setup_method(self):
        self.discovery = OAuth2Discovery()
        self.discovery._http_client = AsyncMock()

    @pytest.mark.parametrize(
        "issuer,expected_url",
        [
            (
                "https://auth.example.com",
                "https://auth.example.com/.well-known/oauth-authorization-server",
            ),
            (
                "https://auth.example.com/",
                "https://auth.example.com/.well-known/oauth-authorization-server",
            ),
            (
                "https://auth.example.com/tenant1",
                "https://auth.example.com/.well-known/oauth-authorization-server/tenant1",
            ),
        ],
    )
    def test_metadata_url_construction(self, issuer, expected_url):
        assert self.discovery._build_authorization_server_url(issuer) == expected_url

    async def test_successful_discovery(self):
        # Arrange
        self.discovery._http_client.get.return_value = make_response(
            200, AUTH_SERVER_METADATA
        )

        # Act
        result = await self.discovery.discover_authorization_server(
            "https://auth.example.com"
        )

        # Assert
        assert result.issuer == "https://auth.example.com"
        assert result.server.token_endpoint == "https://auth.example.com/token"
        assert result.server.registration_endpoint == "https://auth.example.com/register"
        assert result.server.model_dump()["dpop_signing_alg_values_supported"] == [
            "ES256"
        ]

        headers = self.discovery._http_client.get.call_args[1]["headers"]
        assert headers["MCP-Protocol-Version"] == MCP_PROTOCOL_VERSION

    async def test_failure_has_no_fallback(self):
        # Arrange
        self.discovery._http_client.get.return_value = make_response(
            404, reason="Not Found"
        )

        # Act & Assert
        with pytest.raises(AuthorizationServerMetadataError) as exc_info:
            await self.discovery.discover_authorization_server(
                "https://auth.example.com/tenant1"
            )

        assert exc_info.value.status == 404
        assert exc_info.value.url == (
            "https://auth.example.com/.well-known/oauth-authorization-server/tenant1"
        )
        self.discovery._http_client.get.assert_awaited_once()

    async def test_invalid_document_is_wrapped(self):
        # Arrange - token_endpoint missing
        payload = {
            "issuer": "https://auth.example.com",
            "authorization_endpoint": "https://auth.example.com/authorize",
        }
        self.discovery._http_client.get.return_value = make_response(200, payload)

        # Act & Assert
        with pytest.raises(AuthorizationServerMetadataError) as exc_info:
            await self.discovery.discover_authorization_server(
                "https://auth.example.com"
            )

        assert exc_info.value.__cause__ is not None

    async def test_server_without_s256_is_rejected(self):
        payload = {
            **AUTH_SERVER_METADATA,
            "code_challenge_methods_supported": ["plain"],
        }
        self.discovery._http_client.get.return_value = make_response(200, payload)

        with pytest.raises(AuthorizationServerMetadataError):
            await self.discovery.discover_authorization_server(
                "https://auth.example.com"
            )

    async def test_issuer_mismatch_is_rejected(self):
        payload = {**AUTH_SERVER_METADATA, "issuer": "https://evil.example.com"}
        self.discovery._http_client.get.return_value = make_response(200, payload)

        with pytest.raises(AuthorizationServerMetadataError, match="does not match"):
            await self.discovery.discover_authorization_server(
                "https://auth.example.com"
            )


class TestDiscoveryFrom401:
    def setup_method(self):
        self.discovery = OAuth2Discovery()
        self.discovery._http_client = AsyncMock()

    async def test_uses_resource_metadata_from_www_authenticate(self):
        # Arrange
        metadata_url = "https://api.example.com/custom/metadata"
        unauthorized = MagicMock()
        unauthorized.status_code = 401
        unauthorized.headers = {
            "WWW-Authenticate": (
                f'Bearer realm="mcp", resource_metadata="{metadata_url}"'
            )
        }
        self.discovery._http_client.get.return_value = make_response(
            200, RESOURCE_METADATA
        )

        # Act
        result = await self.discovery.discover_from_401(unauthorized)

        # Assert
        assert result.discovery_url == metadata_url
        assert self.discovery._http_client.get.call_args[0][0] == metadata_url

    async def test_rejects_non_401_response(self):
        response = MagicMock()
        response.status_code = 403

        with pytest.raises(DiscoveryError, match="Expected 401"):
            await self.discovery.discover_from_401(response)


class TestHttpClientOwnership:
    async def test_close_releases_owned_client(self):
        discovery = OAuth2Discovery()
        http_client = discovery._http_client

        await discovery.close()

        assert http_client.is_closed

    async def test_close_leaves_injected_client_open(self):
        async with httpx.AsyncClient() as http_client:
            discovery = OAuth2Discovery(http_client=http_client)

            await discovery.close()

            assert not http_client.is_closed
