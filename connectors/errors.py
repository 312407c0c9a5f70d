"""
Error taxonomy for the integration core.

Every error carries a developer-facing ``message`` and a ``user_message``
that is safe to show to end users (no encryption internals, no raw
provider payloads).
"""

from __future__ import annotations

import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class IntegrationError(Exception):
    """Base exception for all integration errors."""

    default_user_message = "An unexpected error occurred. Please try again."

    def __init__(
        self,
        message: str,
        error_code: str = "INTEGRATION_ERROR",
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        recoverable: bool = False,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        self.user_message = user_message or self.default_user_message
        self.recoverable = recoverable
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)
        self.traceback = traceback.format_exc()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "context": self.context,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_error) if self.original_error else None,
        }


class ConfigurationError(IntegrationError):
    """Required settings are missing or invalid."""

    default_user_message = "The integration service is not configured."

    def __init__(self, message: str, missing: Optional[List[str]] = None, **kwargs):
        super().__init__(
            message,
            error_code="CONFIGURATION_ERROR",
            context={"missing": missing or []},
            **kwargs,
        )
        self.missing = missing or []


class StorageError(IntegrationError):
    """Secure storage is unavailable or a write failed."""

    default_user_message = "We couldn't save your credentials securely. Please try again."

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code="STORAGE_ERROR",
            context={"key": key},
            recoverable=True,
            **kwargs,
        )
        self.key = key


class CorruptionError(IntegrationError):
    """A stored blob could not be decrypted or parsed. Recovered as a cache miss."""

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code="CORRUPTION_ERROR",
            context={"key": key},
            recoverable=True,
            **kwargs,
        )
        self.key = key


class ExpiryExhausted(IntegrationError):
    """Token expired and could not be refreshed; the user must re-authenticate."""

    default_user_message = "Your session has expired. Please reconnect this integration."

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code="EXPIRY_EXHAUSTED",
            context={"key": key},
            **kwargs,
        )
        self.key = key


class AuthorizationError(IntegrationError):
    """An action was attempted without an active connection."""

    default_user_message = "Connect this integration first."

    def __init__(self, message: str, connector: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code="AUTHORIZATION_ERROR",
            context={"connector": connector},
            **kwargs,
        )
        self.connector = connector


class ProviderError(IntegrationError):
    """A call to the upstream connector provider failed."""

    default_user_message = (
        "There was an issue connecting to an external service. Please try again later."
    )

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        connector: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        kwargs.setdefault("recoverable", True)
        super().__init__(
            message,
            error_code="PROVIDER_ERROR",
            context={
                "operation": operation,
                "connector": connector,
                "status_code": status_code,
            },
            **kwargs,
        )
        self.operation = operation
        self.connector = connector
        self.status_code = status_code

    @property
    def auth_revoked(self) -> bool:
        """True when the provider signalled that the connection's auth is gone."""
        if self.status_code in (401, 403):
            return True
        text = str(self.original_error or self.message).lower()
        return "unauthorized" in text or "revoked" in text


class DisconnectError(IntegrationError):
    """Revoking a connection upstream failed. Local state is left untouched."""

    default_user_message = "We couldn't disconnect this integration. Please try again."

    def __init__(self, message: str, reason: str = "", connection_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code="DISCONNECT_ERROR",
            context={"reason": reason, "connection_id": connection_id},
            recoverable=True,
            **kwargs,
        )
        self.reason = reason
        self.connection_id = connection_id


class ConnectionNotFoundError(IntegrationError):
    """The connection does not exist or does not belong to the user."""

    default_user_message = "Connection not found."

    def __init__(self, message: str, connection_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code="CONNECTION_NOT_FOUND",
            context={"connection_id": connection_id},
            **kwargs,
        )
        self.connection_id = connection_id
