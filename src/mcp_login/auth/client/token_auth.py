"""Helpers for authenticating with a pre-acquired access token."""

from __future__ import annotations

import time

import jwt

from mcp_login.auth.client.config import DEFAULT_EXPIRY_BUFFER_MS
from mcp_login.auth.client.models.tokens import now_ms


def create_token_auth_headers(
    access_token: str, token_type: str = "Bearer"
) -> dict[str, str]:
    """Create HTTP headers carrying a static token.

    Example:
        create_token_auth_headers(os.environ["MCP_ACCESS_TOKEN"])
        # {'Authorization': 'Bearer eyJ...'}
    """
    return {"Authorization": f"{token_type} {access_token}"}


def validate_access_token(access_token: str | None) -> None:
    """Check that an access token is present and non-blank.

    Raises:
        ValueError: If the token is missing or blank
    """
    if not access_token:
        raise ValueError("Access token is required but was not provided")

    if not access_token.strip():
        raise ValueError("Access token cannot be empty")


def is_token_expired(access_token: str, now: float | None = None) -> bool:
    """Best-effort expiry check for JWT access tokens.

    Reads the unverified ``exp`` claim. Tokens that are not JWTs, or whose
    payload cannot be decoded, are reported as not expired.

    Args:
        access_token: Token to inspect
        now: Current Unix time in seconds, for testing
    """
    try:
        payload = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return False

    exp = payload.get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        return False

    if now is None:
        now = time.time()
    return exp < now


def is_token_expiring_soon(
    expires_at: int | None,
    buffer_ms: int = DEFAULT_EXPIRY_BUFFER_MS,
    now: int | None = None,
) -> bool:
    """Check whether a token expires within ``buffer_ms``.

    Args:
        expires_at: Expiry as Unix milliseconds; None never expires
        buffer_ms: Safety margin in milliseconds
        now: Current Unix time in milliseconds, for testing
    """
    if expires_at is None:
        return False

    if now is None:
        now = now_ms()
    return expires_at - buffer_ms < now
