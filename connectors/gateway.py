"""
ActionGateway — executes remote actions behind the authorization gate.

An action reaches the provider only when the user has an active connection
to the target connector at call time.  Actions are never retried: their
side effects may not be idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from config.settings import Settings
from connectors.errors import AuthorizationError, IntegrationError, ProviderError
from connectors.lifecycle import ConnectionLifecycle, LifecycleEvent
from connectors.provider import ConnectorProvider
from connectors.registry import ConnectionRegistry
from utils.schemas import ActionResult, utcnow

logger = logging.getLogger(__name__)


class ActionGateway:
    def __init__(
        self,
        provider: ConnectorProvider,
        registry: ConnectionRegistry,
        settings: Settings,
        lifecycle: Optional[ConnectionLifecycle] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._provider = provider
        self._registry = registry
        self._platform = settings.platform_name
        self._timeout = settings.provider_timeout_seconds
        self._lifecycle = lifecycle
        self._clock = clock

    async def execute(
        self,
        user_id: str,
        connector_id: str,
        action_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ActionResult:
        """
        Run *action_id* on *connector_id* for *user_id*.

        Raises
        ------
        AuthorizationError  – no active connection; the provider is not contacted
        ProviderError       – the provider call failed (wrapped with action/connector context)
        """
        connection = await self._registry.active_connection(user_id, connector_id)
        if connection is None:
            logger.info("Refusing %s on %s for user %s: not connected", action_id, connector_id, user_id)
            raise AuthorizationError(
                f"No active connection to {connector_id}",
                connector=connector_id,
            )

        executed_at = self._clock()
        stamped = {
            **(payload or {}),
            "executed_by": self._platform,
            "executed_at": executed_at.isoformat(),
        }

        try:
            result = await asyncio.wait_for(
                self._provider.execute_action(user_id, connector_id, action_id, stamped),
                timeout=self._timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = self._wrap(exc, connector_id, action_id)
            if error.auth_revoked and self._lifecycle is not None:
                self._lifecycle.try_apply(user_id, connector_id, LifecycleEvent.AUTH_REVOKED)
            logger.error("Action %s on %s failed for user %s: %s", action_id, connector_id, user_id, error.message)
            raise error from exc

        logger.info("Executed %s on %s for user %s", action_id, connector_id, user_id)
        return ActionResult(
            result=result,
            executed_at=executed_at,
            connector=connector_id,
            action=action_id,
        )

    @staticmethod
    def _wrap(exc: Exception, connector_id: str, action_id: str) -> ProviderError:
        if isinstance(exc, asyncio.TimeoutError):
            detail = "timed out"
        elif isinstance(exc, IntegrationError):
            detail = exc.message
        else:
            detail = str(exc) or exc.__class__.__name__
        return ProviderError(
            f"Failed to execute action '{action_id}' on {connector_id}: {detail}",
            operation=action_id,
            connector=connector_id,
            status_code=getattr(exc, "status_code", None),
            user_message=f"Failed to execute action '{action_id}' on {connector_id}.",
            original_error=exc,
        )
