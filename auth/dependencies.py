"""
FastAPI dependencies for authentication.

Provides ``get_current_user_id``, used across all protected routes.
"""

from __future__ import annotations

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.dependencies import get_settings
from auth.jwt import verify_token
from config.settings import Settings

_bearer_scheme = HTTPBearer()


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> str:
    """
    Extract and verify the Bearer token, returning the authenticated
    ``user_id``.
    """
    return verify_token(credentials.credentials, secret=settings.jwt_secret)
