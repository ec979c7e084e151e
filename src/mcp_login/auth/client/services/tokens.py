"""OAuth 2.1 token exchange and refresh service.

Implements RFC 6749 token endpoint interactions with PKCE (RFC 7636)
and Resource Indicators (RFC 8707).
"""

from __future__ import annotations

import logging
from urllib.parse import quote_plus

import httpx
from pydantic import ValidationError

from mcp_login.auth.client.config import (
    DEFAULT_HTTP_TIMEOUT,
    MCP_PROTOCOL_VERSION,
    PROTOCOL_VERSION_HEADER,
)
from mcp_login.auth.client.models.errors import (
    ExchangeError,
    TokenExchangeError,
    TokenRefreshError,
)
from mcp_login.auth.client.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)


class OAuth2TokenManager:
    """Manages OAuth 2.1 token exchange and refresh operations.

    Handles the token endpoint interactions including:
    - Authorization code to access token exchange (RFC 6749 Section 4.1.3)
    - Access token refresh (RFC 6749 Section 6)
    - PKCE code verification (RFC 7636)
    - Resource parameter handling (RFC 8707)

    Public clients send client_id in the form body; confidential clients
    authenticate with HTTP Basic (client_secret_basic).
    """

    def __init__(
        self,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.timeout = timeout
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def exchange_code_for_token(
        self, token_request: TokenRequest
    ) -> TokenResponse:
        """Exchange authorization code for access token.

        Args:
            token_request: Token exchange request parameters

        Returns:
            TokenResponse: Successful token response

        Raises:
            TokenExchangeError: If the token endpoint rejects the code or
                the request fails
        """
        logger.debug(f"Exchanging authorization code at {token_request.token_endpoint}")

        return await self._request_tokens(
            token_request.token_endpoint,
            token_request.to_form_data(),
            token_request.client_id,
            token_request.client_secret,
            TokenExchangeError,
        )

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenResponse:
        """Refresh an access token using a refresh token.

        Raises:
            TokenRefreshError: If the token endpoint rejects the refresh token
                or the request fails
        """
        logger.debug(f"Refreshing access token at {refresh_request.token_endpoint}")

        return await self._request_tokens(
            refresh_request.token_endpoint,
            refresh_request.to_form_data(),
            refresh_request.client_id,
            refresh_request.client_secret,
            TokenRefreshError,
        )

    async def _request_tokens(
        self,
        token_endpoint: str,
        form_data: dict[str, str],
        client_id: str,
        client_secret: str | None,
        error_class: type[ExchangeError],
    ) -> TokenResponse:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
            PROTOCOL_VERSION_HEADER: MCP_PROTOCOL_VERSION,
        }

        # RFC 6749 Section 2.3.1: credentials are form-encoded before Basic
        auth = None
        if client_secret:
            auth = httpx.BasicAuth(quote_plus(client_id), quote_plus(client_secret))

        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={client_id}, resource={form_data.get('resource', 'none')}"
        )

        try:
            response = await self._http_client.post(
                token_endpoint,
                data=form_data,
                headers=headers,
                auth=auth,
            )
        except httpx.HTTPError as e:
            raise error_class(
                f"HTTP error calling token endpoint {token_endpoint}: {e}",
                url=token_endpoint,
            ) from e

        return self._parse_token_response(response, token_endpoint, error_class)

    def _parse_token_response(
        self,
        response: httpx.Response,
        token_endpoint: str,
        error_class: type[ExchangeError],
    ) -> TokenResponse:
        """Parse token endpoint response according to RFC 6749 Section 5.

        Raises:
            ExchangeError: For error responses (Section 5.2) and unparseable
                success responses
        """
        if not 200 <= response.status_code < 300:
            error_code = None
            error_description = None
            try:
                error_data = response.json()
                if isinstance(error_data, dict):
                    error_code = error_data.get("error")
                    error_description = error_data.get("error_description")
            except ValueError:
                pass  # Non-JSON error bodies are reported verbatim

            detail = error_code or "unknown_error"
            if error_description:
                detail += f" - {error_description}"

            logger.warning(
                f"Token endpoint {token_endpoint} failed with "
                f"{response.status_code}: {detail}"
            )
            raise error_class(
                f"Token request to {token_endpoint} failed "
                f"({response.status_code}): {detail}",
                status=response.status_code,
                url=token_endpoint,
                error=error_code,
                error_description=error_description,
                body=response.text,
            )

        try:
            token_response = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise error_class(
                f"Invalid token response from {token_endpoint}: {e}",
                status=response.status_code,
                url=token_endpoint,
                body=response.text,
            ) from e

        logger.info("Token request successful")
        return token_response

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http_client.aclose()
