"""
Tests for auth-kit and session token signing.
"""

import json
import re
import time

import pytest
from fastapi import HTTPException

from auth.jwt import (
    _b64url_decode,
    create_authkit_token,
    create_token,
    decode_jwt,
    encode_jwt,
    verify_token,
)

SECRET = "sk_test_secret"
_B64URL_SEGMENT = r"[A-Za-z0-9_-]+"


class TestAuthkitToken:
    def test_shape(self):
        token = create_authkit_token("user-1", {}, secret=SECRET)
        assert len(token) > 100
        assert re.fullmatch(rf"{_B64URL_SEGMENT}\.{_B64URL_SEGMENT}\.{_B64URL_SEGMENT}", token)

    def test_unique_per_user_and_per_call(self):
        a = create_authkit_token("user-1", {}, secret=SECRET)
        b = create_authkit_token("user-2", {}, secret=SECRET)
        c = create_authkit_token("user-1", {}, secret=SECRET)
        assert len({a, b, c}) == 3

    def test_claims(self):
        token = create_authkit_token(
            "user-1", {"integration_id": "gmail"}, secret=SECRET, expires_in=3600, platform="haus-platform"
        )
        claims = decode_jwt(token, SECRET)

        assert claims["identity"]["type"] == "user"
        assert claims["identity"]["value"] == "user-1"
        metadata = claims["identity"]["metadata"]
        assert metadata["integration_id"] == "gmail"
        assert metadata["platform"] == "haus-platform"
        assert "generated_at" in metadata
        assert claims["exp"] - claims["iat"] == 3600

    def test_header_is_hs256(self):
        token = create_authkit_token("user-1", {}, secret=SECRET)
        header = json.loads(_b64url_decode(token.split(".")[0]))
        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_secret_required(self):
        with pytest.raises(ValueError):
            create_authkit_token("user-1", {}, secret="")


class TestDecode:
    def test_forged_signature(self):
        token = create_authkit_token("user-1", {}, secret=SECRET)
        with pytest.raises(ValueError):
            decode_jwt(token, "another-secret")

    def test_expired(self):
        token = encode_jwt({"exp": int(time.time()) - 1}, SECRET)
        with pytest.raises(ValueError):
            decode_jwt(token, SECRET)

    def test_bad_format(self):
        with pytest.raises(ValueError):
            decode_jwt("only.two", SECRET)


class TestSessionToken:
    def test_round_trip(self):
        token = create_token("user-1", secret=SECRET)
        assert verify_token(token, secret=SECRET) == "user-1"

    def test_invalid_raises_401(self):
        with pytest.raises(HTTPException) as exc_info:
            verify_token("garbage", secret=SECRET)
        assert exc_info.value.status_code == 401

    def test_unset_secret_rejects_every_token(self):
        token = create_token("user-1", secret=SECRET)
        with pytest.raises(HTTPException) as exc_info:
            verify_token(token, secret="")
        assert exc_info.value.status_code == 401
