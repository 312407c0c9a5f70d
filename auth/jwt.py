"""
Signed token creation and verification.

Two kinds of token live here:

  • connector auth tokens — HS256 JWTs handed to the connector provider's
    auth kit, identifying the user the connection is being made for.
  • session tokens — identify the caller of the HTTP API.

Both are signed with HMAC-SHA256; secrets are passed in explicitly.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

_HEADER = {"alg": "HS256", "typ": "JWT"}


def _b64url(raw: bytes) -> str:
    return urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64url_decode(segment: str) -> bytes:
    return urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _sign(signing_input: str, secret: str) -> str:
    return _b64url(hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest())


def encode_jwt(claims: Dict[str, Any], secret: str) -> str:
    """Encode *claims* as a compact HS256 JWT."""
    if not secret:
        raise ValueError("a signing secret is required")
    header = _b64url(json.dumps(_HEADER, separators=(",", ":")).encode())
    payload = _b64url(json.dumps(claims, separators=(",", ":"), default=str).encode())
    signing_input = f"{header}.{payload}"
    return f"{signing_input}.{_sign(signing_input, secret)}"


def decode_jwt(token: str, secret: str, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Verify signature and expiry, returning the claims.

    Raises ``ValueError`` on any malformed, forged or expired token.
    """
    if not secret:
        raise ValueError("a signing secret is required")
    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("bad format")
    signing_input = f"{parts[0]}.{parts[1]}"
    if not hmac.compare_digest(parts[2], _sign(signing_input, secret)):
        raise ValueError("bad signature")
    claims = json.loads(_b64url_decode(parts[1]))
    if claims.get("exp", 0) < (now if now is not None else time.time()):
        raise ValueError("token expired")
    return claims


# ── Connector auth tokens ──────────────────────────────────────────────


def create_authkit_token(
    user_id: str,
    metadata: Optional[Dict[str, Any]],
    *,
    secret: str,
    expires_in: int = 3600,
    platform: str = "haus-platform",
) -> str:
    """
    Issue the token the provider's auth kit uses to start a connection.

    Carries the user identity, caller metadata merged with
    ``generated_at``/``platform``, and a random ``jti`` so no two tokens are
    ever identical.
    """
    now = int(time.time())
    claims = {
        "identity": {
            "type": "user",
            "value": user_id,
            "metadata": {
                **(metadata or {}),
                "generated_at": datetime.now(timezone.utc).isoformat(),
                "platform": platform,
            },
        },
        "iat": now,
        "exp": now + expires_in,
        "jti": uuid.uuid4().hex,
    }
    return encode_jwt(claims, secret)


# ── Session tokens ─────────────────────────────────────────────────────


def create_token(user_id: str, *, secret: str, expires_in: int = 604800) -> str:
    """Create a signed session token containing ``user_id`` and expiry."""
    return encode_jwt({"user_id": user_id, "exp": int(time.time()) + expires_in}, secret)


def verify_token(token: str, *, secret: str) -> str:
    """
    Verify a session token and return ``user_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        return decode_jwt(token, secret)["user_id"]
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
