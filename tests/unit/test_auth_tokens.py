"""Unit tests for JWT verification and partner API keys."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import jwt
import pytest

from kcr.auth.api_keys import KEY_PREFIX, generate_api_key, key_prefix, looks_like_partner_key, verify_api_key
from kcr.auth.jwt import create_access_token, verify_token
from kcr.config import get_settings


class TestJWT:
    """RS256 access tokens."""

    def test_round_trip_claims(self):
        payload = verify_token(create_access_token(12))
        assert payload["sub"] == "12"
        assert payload["type"] == "access"
        assert "role" not in payload

    def test_admin_role_claim(self):
        assert verify_token(create_access_token(1, role="admin"))["role"] == "admin"

    def test_expired_token_rejected(self):
        settings = get_settings()
        private_key = Path(settings.jwt_private_key_path).read_text()
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = jwt.encode(
            {"sub": "1", "iat": past, "exp": past + timedelta(minutes=5), "iss": settings.jwt_issuer, "type": "access"},
            private_key,
            algorithm="RS256",
        )
        with pytest.raises(jwt.InvalidTokenError, match="expired"):
            verify_token(token)

    def test_wrong_issuer_rejected(self):
        private_key = Path(get_settings().jwt_private_key_path).read_text()
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": "1", "iat": now, "exp": now + timedelta(minutes=5), "iss": "someone-else", "type": "access"},
            private_key,
            algorithm="RS256",
        )
        with pytest.raises(jwt.InvalidTokenError):
            verify_token(token)

    def test_wrong_type_rejected(self):
        with pytest.raises(jwt.InvalidTokenError, match="Expected token type"):
            verify_token(create_access_token(1), expected_type="refresh")

    def test_tampered_token_rejected(self):
        token = create_access_token(1)
        with pytest.raises(jwt.InvalidTokenError):
            verify_token(token[:-4] + "AAAA")


class TestPartnerApiKeys:
    """argon2id-hashed partner keys."""

    def test_key_format(self):
        full_key, prefix, key_hash = generate_api_key()
        assert full_key.startswith(KEY_PREFIX)
        assert prefix == key_prefix(full_key)
        assert len(prefix) == 14
        assert key_hash.startswith("$argon2id$")

    def test_verify(self):
        full_key, _, key_hash = generate_api_key()
        assert verify_api_key(full_key, key_hash)

    def test_wrong_key(self):
        _, _, key_hash = generate_api_key()
        other, _, _ = generate_api_key()
        assert not verify_api_key(other, key_hash)

    def test_invalid_hash(self):
        assert not verify_api_key("pk-kcr-abc", "not-a-hash")

    @pytest.mark.parametrize(("value", "expected"), [
        ("pk-kcr-0123456789abcdef", True),
        ("pk-kcr-", False),
        ("sk-live-0123456789abcdef", False),
        ("", False),
    ])
    def test_looks_like_partner_key(self, value, expected):
        assert looks_like_partner_key(value) is expected
