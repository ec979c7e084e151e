import base64
import json

import jwt
import pytest

from mcp_login.auth.client.token_auth import (
    create_token_auth_headers,
    is_token_expired,
    is_token_expiring_soon,
    validate_access_token,
)

NOW_SECONDS = 1_700_000_000


def make_jwt(payload) -> str:
    def encode(data) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    signature = base64.urlsafe_b64encode(b"signature").decode("ascii").rstrip("=")
    return f"{encode({'alg': 'none'})}.{encode(payload)}.{signature}"


class TestCreateTokenAuthHeaders:
    def test_bearer_by_default(self):
        assert create_token_auth_headers("abc") == {"Authorization": "Bearer abc"}

    def test_custom_token_type(self):
        assert create_token_auth_headers("abc", "DPoP") == {"Authorization": "DPoP abc"}


class TestValidateAccessToken:
    def test_accepts_token(self):
        validate_access_token("abc")

    @pytest.mark.parametrize("token", [None, ""])
    def test_rejects_missing(self, token):
        with pytest.raises(ValueError, match="required"):
            validate_access_token(token)

    def test_rejects_blank(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            validate_access_token("   ")


class TestIsTokenExpired:
    def test_expired_jwt(self):
        token = make_jwt({"exp": NOW_SECONDS - 10})

        assert is_token_expired(token, now=NOW_SECONDS)

    def test_live_jwt(self):
        token = make_jwt({"exp": NOW_SECONDS + 3600})

        assert not is_token_expired(token, now=NOW_SECONDS)

    def test_signature_is_not_verified(self):
        token = jwt.encode({"exp": NOW_SECONDS - 10}, "s" * 32, algorithm="HS256")

        assert is_token_expired(token, now=NOW_SECONDS)

    @pytest.mark.parametrize(
        "token",
        [
            "opaque-token",
            "a.b",
            "header..signature",
            "header.!!!not-base64!!!.signature",
            make_jwt({"sub": "user"}),
            make_jwt({"exp": "tomorrow"}),
            make_jwt(["not", "a", "dict"]),
        ],
    )
    def test_undeterminable_tokens_are_not_expired(self, token):
        assert not is_token_expired(token, now=NOW_SECONDS)


class TestIsTokenExpiringSoon:
    def test_no_expiry_never_expires(self):
        assert not is_token_expiring_soon(None)

    def test_within_default_buffer(self):
        now = NOW_SECONDS * 1000

        assert is_token_expiring_soon(now + 30_000, now=now)
        assert not is_token_expiring_soon(now + 120_000, now=now)

    def test_custom_buffer(self):
        now = NOW_SECONDS * 1000

        assert is_token_expiring_soon(now + 120_000, buffer_ms=300_000, now=now)
