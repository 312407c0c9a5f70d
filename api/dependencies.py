"""
FastAPI dependencies (shared across routes).
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from config.settings import Settings
from connectors.service import IntegrationService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_integration_service(request: Request) -> IntegrationService:
    """The service built at startup; 503 until the app has finished starting."""
    service = getattr(request.app.state, "integration_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Integration service is not ready",
        )
    return service
