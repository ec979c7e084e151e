"""PKCE (Proof Key for Code Exchange) and state primitives for OAuth 2.1.

Implements RFC 7636 parameter generation to prevent authorization code
interception attacks, and the opaque state parameter that protects the
redirect against CSRF. All randomness comes from the ``secrets`` CSPRNG.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from mcp_login.auth.client.models.errors import StateMismatchError
from mcp_login.auth.client.models.flow import PKCEParameters

# RFC 7636 Section 4.1 unreserved characters
_VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
_VERIFIER_LENGTH = 128


def generate_pkce() -> PKCEParameters:
    """Generate new PKCE parameters for an authorization flow.

    Creates a cryptographically secure code verifier and derives the
    corresponding code challenge using SHA256.

    Returns:
        PKCEParameters: Immutable parameters for one flow attempt
    """
    code_verifier = _generate_code_verifier()
    return PKCEParameters(
        code_verifier=code_verifier,
        code_challenge=compute_code_challenge(code_verifier),
    )


def compute_code_challenge(code_verifier: str) -> str:
    """Generate code challenge from code verifier using S256 method.

    RFC 7636 Section 4.2: For S256, the code challenge is:
    BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))

    Args:
        code_verifier: The code verifier to hash

    Returns:
        Base64url-encoded SHA256 hash of the code verifier, without padding
    """
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    """Generate a cryptographically secure state parameter.

    Returns:
        URL-safe string carrying 256 bits of randomness
    """
    return secrets.token_urlsafe(32)


def validate_state(expected: str, actual: str | None) -> None:
    """Validate state parameter matches expected value.

    Args:
        expected: State parameter from original authorization request
        actual: State parameter from callback URL

    Raises:
        StateMismatchError: If state parameters don't match
    """
    if actual is None or not secrets.compare_digest(
        expected.encode("utf-8"), actual.encode("utf-8")
    ):
        raise StateMismatchError("OAuth state mismatch - possible CSRF attack")


def _generate_code_verifier() -> str:
    # 128 characters, the maximum RFC 7636 allows
    return "".join(secrets.choice(_VERIFIER_ALPHABET) for _ in range(_VERIFIER_LENGTH))
