"""
Pydantic schemas for the integration core.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# Status vocabularies
# ═══════════════════════════════════════════════════════════════════════════════


class CanonicalStatus(str, Enum):
    """Normalized connection status, independent of upstream vocabulary."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"


# ═══════════════════════════════════════════════════════════════════════════════
# Catalog & connections
# ═══════════════════════════════════════════════════════════════════════════════


class IntegrationAction(BaseModel):
    id: str
    name: str
    description: str = ""


class IntegrationDescriptor(BaseModel):
    """Catalog metadata for one connector."""

    id: str
    name: str
    description: str
    icon: Optional[str] = None
    category: str = "Other"
    popular: bool = False
    features: List[str] = Field(default_factory=list)
    actions: List[IntegrationAction] = Field(default_factory=list)
    requirements: List[str] = Field(default_factory=list)


class Connection(BaseModel):
    """A user's link to one connector, in canonical shape."""

    id: str
    connector_id: str
    status: CanonicalStatus = CanonicalStatus.INACTIVE
    connected_at: str
    last_sync_at: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == CanonicalStatus.ACTIVE


# ═══════════════════════════════════════════════════════════════════════════════
# Health & usage
# ═══════════════════════════════════════════════════════════════════════════════


class HealthRecord(BaseModel):
    connector: str
    status: HealthStatus
    last_check: datetime = Field(default_factory=utcnow)
    latency: Optional[float] = None                     # milliseconds
    error: Optional[str] = None
    connection_id: Optional[str] = None
    last_sync_at: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class HealthMetrics(BaseModel):
    uptime: float
    average_latency: float
    error_rate: float
    total_requests: int
    failed_requests: int
    last_successful_sync: Optional[str] = None


class DetailedHealthRecord(HealthRecord):
    """
    Health record plus provider metrics.

    When the provider exposes no metrics, ``metrics_available`` is False and
    ``metrics`` is None; numbers are never synthesized.
    """

    metrics_available: bool = False
    metrics: Optional[HealthMetrics] = None
    warnings: List[str] = Field(default_factory=list)


class HealthSummary(BaseModel):
    integrations: List[HealthRecord] = Field(default_factory=list)
    overall_status: HealthStatus
    last_updated: datetime = Field(default_factory=utcnow)


class UsagePoint(BaseModel):
    timestamp: str
    requests: int
    successful_requests: int
    failed_requests: int
    average_latency: float


class UsageSummary(BaseModel):
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_latency: float = 0.0


class UsageStats(BaseModel):
    time_range: str
    connector: Optional[str] = None
    available: bool = False
    data: List[UsagePoint] = Field(default_factory=list)
    summary: Optional[UsageSummary] = None
    generated_at: datetime = Field(default_factory=utcnow)


# ═══════════════════════════════════════════════════════════════════════════════
# Caller-facing results & view models
# ═══════════════════════════════════════════════════════════════════════════════


class AuthTokenResponse(BaseModel):
    token: str
    expires_in: int
    integration_id: str


class ActionResult(BaseModel):
    success: bool = True
    result: Any = None
    executed_at: datetime
    connector: str
    action: str


class DisconnectResult(BaseModel):
    success: bool = True
    disconnected_at: datetime = Field(default_factory=utcnow)
    connection_id: str
    connector: str


class Integration(IntegrationDescriptor):
    """
    Descriptor + Connection + HealthRecord composed for display.

    ``status`` is the health status when connected (``connected`` when no
    health record is available yet), otherwise ``disconnected``.
    """

    connected: bool = False
    connection_id: Optional[str] = None
    connected_at: Optional[str] = None
    status: str = "disconnected"
    last_sync_at: Optional[str] = None
    error_message: Optional[str] = None


class IntegrationStats(BaseModel):
    total: int = 0
    connected: int = 0
    disconnected: int = 0
    errors: int = 0
