"""Exception hierarchy for OAuth 2.1 authentication errors.

Provides specific exception types for different failure modes to enable
precise error handling and recovery strategies.
"""

from __future__ import annotations


class OAuth2Error(Exception):
    """Base exception for all OAuth 2.1 related errors."""

    pass


class DiscoveryError(OAuth2Error):
    """Raised when OAuth server discovery fails.

    Carries the HTTP status (when the server answered) and the URL that was
    queried, so callers can tell a 404 apart from other failures.
    """

    def __init__(
        self, message: str, status: int | None = None, url: str | None = None
    ):
        super().__init__(message)
        self.status = status
        self.url = url


class ProtectedResourceMetadataError(DiscoveryError):
    """Raised when Protected Resource Metadata discovery fails."""

    pass


class AuthorizationServerMetadataError(DiscoveryError):
    """Raised when Authorization Server Metadata discovery fails."""

    pass


class RegistrationError(OAuth2Error):
    """Raised when dynamic client registration fails."""

    def __init__(
        self, message: str, status: int | None = None, body: str | None = None
    ):
        super().__init__(message)
        self.status = status
        self.body = body


class CallbackError(OAuth2Error):
    """Raised when the authorization redirect does not yield a usable code."""

    pass


class AuthorizationDeniedError(CallbackError):
    """Raised when the authorization server reports an error in the redirect."""

    def __init__(self, error: str, description: str | None = None):
        message = f"OAuth error: {error}"
        if description:
            message += f" - {description}"
        super().__init__(message)
        self.error = error
        self.description = description


class StateMismatchError(CallbackError):
    """Raised when the callback state does not match the issued state.

    Treated as a forged callback: the accompanying code is never used.
    """

    pass


class MissingAuthorizationCodeError(CallbackError):
    """Raised when the callback carries neither an error nor a code."""

    pass


class CallbackTimeoutError(CallbackError):
    """Raised when no terminal callback arrives before the flow timeout."""

    pass


class ExchangeError(OAuth2Error):
    """Raised when the token endpoint rejects a grant."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        url: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.url = url
        self.error = error
        self.error_description = error_description
        self.body = body


class TokenExchangeError(ExchangeError):
    """Raised when authorization code to token exchange fails."""

    pass


class TokenRefreshError(ExchangeError):
    """Raised when token refresh fails."""

    pass


class CacheError(OAuth2Error):
    """Raised when cached state required by an operation is missing or corrupt."""

    pass
