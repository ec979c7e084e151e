"""Values exchanged while driving one authorization code flow.

None of these are persisted: the PKCE verifier and the state live only as
long as the flow that created them.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

# RFC 7636 Section 4.1: 43-128 unreserved characters
_PKCE_VALUE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


@dataclass(frozen=True)
class PKCEParameters:
    """Verifier and S256 challenge generated for a single flow (RFC 7636)."""

    code_verifier: str = field(repr=False)
    code_challenge: str
    code_challenge_method: str = "S256"

    def __post_init__(self) -> None:
        if self.code_challenge_method != "S256":
            raise ValueError(
                f"Unsupported code challenge method {self.code_challenge_method!r}, "
                "only S256 is allowed"
            )
        for name in ("code_verifier", "code_challenge"):
            if not _PKCE_VALUE.match(getattr(self, name)):
                raise ValueError(f"{name} must be 43-128 unreserved characters")


@dataclass(frozen=True)
class AuthorizationRequest:
    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    scopes: tuple[str, ...]
    pkce: PKCEParameters
    state: str
    resource: str | None = None

    def query_params(self) -> dict[str, str]:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "code_challenge": self.pkce.code_challenge,
            "code_challenge_method": self.pkce.code_challenge_method,
            "state": self.state,
        }
        if self.resource is not None:
            # RFC 8707 audience binding
            params["resource"] = self.resource
        return params

    def build_authorization_url(self) -> str:
        """Append the request parameters to the endpoint's own query, if any."""
        scheme, netloc, path, query, fragment = urlsplit(self.authorization_endpoint)
        pairs = parse_qsl(query, keep_blank_values=True)
        pairs.extend(self.query_params().items())
        return urlunsplit((scheme, netloc, path, urlencode(pairs), fragment))


@dataclass(frozen=True)
class AuthorizationResponse:
    """Parameters the authorization server appended to the redirect URI."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> AuthorizationResponse:
        return cls(
            code=params.get("code"),
            state=params.get("state"),
            error=params.get("error"),
            error_description=params.get("error_description"),
        )

    @property
    def denied(self) -> bool:
        return self.error is not None
