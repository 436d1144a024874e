"""Unit tests for auth dependencies - JWT validation and user auto-creation."""

import base64
import time
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi import HTTPException
from jose import JWTError, jwt

from app.api.deps.auth import decode_token, get_current_user, get_signing_key
from tests.helpers.mock_factories import make_mock_user

SECRET = "test-signing-secret-with-enough-bytes"
JWKS = {
    "keys": [
        {
            "kid": "key-1",
            "kty": "oct",
            "alg": "HS256",
            "k": base64.urlsafe_b64encode(SECRET.encode()).rstrip(b"=").decode(),
        }
    ]
}


def _token(claims: dict, kid: str = "key-1") -> str:
    body = {
        "aud": "authenticated",
        "iss": "https://issuer.test",
        "exp": int(time.time()) + 300,
        **claims,
    }
    return jwt.encode(body, SECRET, algorithm="HS256", headers={"kid": kid})


@pytest.fixture
def auth_settings():
    with patch("app.api.deps.auth.settings") as mock_settings:
        mock_settings.auth_audience = "authenticated"
        mock_settings.auth_issuer = "https://issuer.test"
        mock_settings.auth_algorithms = ["HS256"]
        yield mock_settings


# ---------------------------------------------------------------------------
# get_signing_key / decode_token
# ---------------------------------------------------------------------------


class TestGetSigningKey:
    """Tests for JWKS key matching by kid."""

    def test_returns_key_when_kid_matches(self, auth_settings):
        with patch("app.api.deps.auth.jwk") as mock_jwk:
            expected_key = MagicMock()
            mock_jwk.construct.return_value = expected_key

            assert get_signing_key(JWKS, _token({"sub": "u1"})) is expected_key
            assert mock_jwk.construct.call_args.kwargs["algorithm"] == "HS256"

    def test_raises_when_no_matching_kid(self, auth_settings):
        with pytest.raises(ValueError, match="Unable to find matching key"):
            get_signing_key(JWKS, _token({"sub": "u1"}, kid="rotated"))

    def test_raises_when_no_keys_in_jwks(self, auth_settings):
        with pytest.raises(ValueError, match="Unable to find matching key"):
            get_signing_key({}, _token({"sub": "u1"}))


class TestDecodeToken:
    def test_valid_token(self, auth_settings):
        claims = decode_token(_token({"sub": "user_1", "email": "a@b.c"}), JWKS)
        assert claims["sub"] == "user_1"

    def test_wrong_audience(self, auth_settings):
        with pytest.raises(JWTError):
            decode_token(_token({"sub": "user_1", "aud": "someone-else"}), JWKS)

    def test_wrong_issuer(self, auth_settings):
        with pytest.raises(JWTError):
            decode_token(_token({"sub": "user_1", "iss": "https://evil.test"}), JWKS)

    def test_expired(self, auth_settings):
        with pytest.raises(JWTError):
            decode_token(_token({"sub": "user_1", "exp": int(time.time()) - 10}), JWKS)

    def test_missing_subject(self, auth_settings):
        with pytest.raises(ValueError, match="no subject"):
            decode_token(_token({}), JWKS)


# ---------------------------------------------------------------------------
# get_current_user
# ---------------------------------------------------------------------------


class TestGetCurrentUser:
    """Tests for JWT-based user authentication."""

    def setup_method(self):
        self.db = AsyncMock()
        self.credentials = MagicMock(credentials="token")
        self.claims = {
            "sub": "user_1",
            "email": "test@example.com",
            "user_metadata": {"full_name": "Test User"},
        }

    async def test_raises_401_when_no_credentials(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(None, self.db)
        assert exc_info.value.status_code == 401

    @patch("app.api.deps.auth.user_ops")
    @patch("app.api.deps.auth.decode_token")
    @patch("app.api.deps.auth.get_jwks", new_callable=AsyncMock)
    async def test_creates_user_from_claims(self, mock_jwks, mock_decode, mock_user_ops):
        mock_decode.return_value = self.claims
        user = make_mock_user(id="user_1")
        mock_user_ops.get_or_create = AsyncMock(return_value=user)

        result = await get_current_user(self.credentials, self.db)

        assert result is user
        mock_user_ops.get_or_create.assert_awaited_once_with(
            self.db, user_id="user_1", email="test@example.com", display_name="Test User"
        )

    @patch("app.api.deps.auth.user_ops")
    @patch("app.api.deps.auth.decode_token")
    @patch("app.api.deps.auth.get_jwks", new_callable=AsyncMock)
    async def test_retries_with_refreshed_jwks(self, mock_jwks, mock_decode, mock_user_ops):
        mock_decode.side_effect = [JWTError("kid rotated"), self.claims]
        mock_user_ops.get_or_create = AsyncMock(return_value=make_mock_user())

        await get_current_user(self.credentials, self.db)

        assert mock_jwks.await_args_list[-1].kwargs == {"force_refresh": True}

    @patch("app.api.deps.auth.decode_token")
    @patch("app.api.deps.auth.get_jwks", new_callable=AsyncMock)
    async def test_invalid_after_refresh_is_401(self, mock_jwks, mock_decode):
        mock_decode.side_effect = JWTError("bad signature")

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(self.credentials, self.db)

        assert exc_info.value.status_code == 401
        assert mock_decode.call_count == 2

    @patch("app.api.deps.auth.get_jwks", new_callable=AsyncMock)
    async def test_jwks_unavailable_is_401(self, mock_jwks):
        mock_jwks.side_effect = httpx.ConnectError("down")

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(self.credentials, self.db)

        assert exc_info.value.status_code == 401
