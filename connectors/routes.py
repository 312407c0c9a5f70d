"""
Integration API routes — auth tokens, catalog, connections, actions, health.

Route prefix: /api/v1/integrations
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from api.dependencies import get_integration_service
from auth.dependencies import get_current_user_id
from connectors.service import IntegrationService
from utils.schemas import (
    ActionResult,
    AuthTokenResponse,
    Connection,
    DetailedHealthRecord,
    DisconnectResult,
    HealthRecord,
    HealthSummary,
    Integration,
    IntegrationDescriptor,
    IntegrationStats,
    UsageStats,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])


# ── Request / response bodies ──────────────────────────────────────────


class AuthTokenRequest(BaseModel):
    integration_id: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    user_agent: Optional[str] = None


class AuthCallbackRequest(BaseModel):
    integration_id: str = Field(..., min_length=1)
    success: bool


class ExecuteActionRequest(BaseModel):
    connector: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


class TestConnectionRequest(BaseModel):
    connector: str = Field(..., min_length=1)


class IntegrationsResponse(BaseModel):
    integrations: List[Integration]
    by_category: Dict[str, List[Integration]]
    stats: IntegrationStats


# ── Routes ─────────────────────────────────────────────────────────────


@router.post("/auth-token", response_model=AuthTokenResponse)
async def generate_auth_token(
    body: AuthTokenRequest,
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> AuthTokenResponse:
    """Issue a short-lived token the client uses to start the connect flow."""
    return await service.generate_auth_token(
        user_id, body.integration_id, body.metadata, body.user_agent
    )


@router.post("/callback")
async def auth_callback(
    body: AuthCallbackRequest,
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> Dict[str, str]:
    """Report how the connect flow ended (success, error or cancel)."""
    try:
        state = await service.handle_auth_callback(user_id, body.integration_id, body.success)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return {"integration_id": body.integration_id, "state": state.value}


@router.get("/available", response_model=List[IntegrationDescriptor])
async def list_available(
    service: IntegrationService = Depends(get_integration_service),
) -> List[IntegrationDescriptor]:
    """Platform-wide catalog. No auth required."""
    return await service.list_integrations()


@router.get("/connections", response_model=List[Connection])
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> List[Connection]:
    return await service.list_connections(user_id)


@router.get("/", response_model=IntegrationsResponse)
async def get_integrations(
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> IntegrationsResponse:
    """Catalog, connections and health composed into one view."""
    view = await service.get_integrations(user_id)
    return IntegrationsResponse(
        integrations=view.integrations,
        by_category=view.by_category,
        stats=view.stats,
    )


@router.post("/actions", response_model=ActionResult)
async def execute_action(
    body: ExecuteActionRequest,
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> ActionResult:
    return await service.execute_action(user_id, body.connector, body.action, body.data)


@router.delete("/connections/{connection_id}", response_model=DisconnectResult)
async def disconnect(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> DisconnectResult:
    return await service.disconnect(user_id, connection_id)


@router.post("/test", response_model=HealthRecord)
async def test_connection(
    body: TestConnectionRequest,
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> HealthRecord:
    return await service.test_connection(user_id, body.connector)


@router.get("/health", response_model=HealthSummary)
async def get_health_status(
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> HealthSummary:
    return await service.get_health_status(user_id)


@router.get("/health/detailed", response_model=List[DetailedHealthRecord])
async def get_detailed_health_status(
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> List[DetailedHealthRecord]:
    return await service.get_detailed_health_status(user_id)


@router.get("/usage", response_model=UsageStats)
async def get_usage_stats(
    connector: Optional[str] = Query(None),
    time_range: Literal["day", "week", "month"] = Query("week"),
    user_id: str = Depends(get_current_user_id),
    service: IntegrationService = Depends(get_integration_service),
) -> UsageStats:
    return await service.get_usage_stats(user_id, connector, time_range)
