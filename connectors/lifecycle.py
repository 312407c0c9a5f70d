"""
Connection lifecycle state machine.

    disconnected --token_issued-------> pending
    pending      --callback_succeeded-> active
    pending      --callback_failed----> disconnected
    active       --auth_revoked-------> error
    active       --deactivated--------> inactive
    error        --reauthenticated----> pending
    inactive     --reauthenticated----> pending

``disconnected`` is the initial state and is reachable from every state.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    INACTIVE = "inactive"


class LifecycleEvent(str, Enum):
    TOKEN_ISSUED = "token_issued"
    CALLBACK_SUCCEEDED = "callback_succeeded"
    CALLBACK_FAILED = "callback_failed"
    AUTH_REVOKED = "auth_revoked"
    DEACTIVATED = "deactivated"
    REAUTHENTICATED = "reauthenticated"
    DISCONNECTED = "disconnected"


_TRANSITIONS: Dict[Tuple[ConnectionState, LifecycleEvent], ConnectionState] = {
    (ConnectionState.DISCONNECTED, LifecycleEvent.TOKEN_ISSUED): ConnectionState.PENDING,
    (ConnectionState.PENDING, LifecycleEvent.TOKEN_ISSUED): ConnectionState.PENDING,
    (ConnectionState.PENDING, LifecycleEvent.CALLBACK_SUCCEEDED): ConnectionState.ACTIVE,
    (ConnectionState.PENDING, LifecycleEvent.CALLBACK_FAILED): ConnectionState.DISCONNECTED,
    (ConnectionState.ACTIVE, LifecycleEvent.AUTH_REVOKED): ConnectionState.ERROR,
    (ConnectionState.ACTIVE, LifecycleEvent.DEACTIVATED): ConnectionState.INACTIVE,
    (ConnectionState.ERROR, LifecycleEvent.REAUTHENTICATED): ConnectionState.PENDING,
    (ConnectionState.ERROR, LifecycleEvent.TOKEN_ISSUED): ConnectionState.PENDING,
    (ConnectionState.INACTIVE, LifecycleEvent.REAUTHENTICATED): ConnectionState.PENDING,
    (ConnectionState.INACTIVE, LifecycleEvent.TOKEN_ISSUED): ConnectionState.PENDING,
}


def next_state(state: ConnectionState, event: LifecycleEvent) -> ConnectionState:
    """Apply *event* to *state*; raises ValueError for an illegal transition."""
    if event == LifecycleEvent.DISCONNECTED:
        return ConnectionState.DISCONNECTED
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise ValueError(f"Illegal transition: {state.value} --{event.value}-->") from None


class ConnectionLifecycle:
    """
    In-process tracker of lifecycle state per (user, connector).

    Only non-``disconnected`` states are kept.  At most *max_entries* are
    tracked; the least recently touched entry is dropped first, which reads
    back as ``disconnected`` until the next upstream sync.
    """

    def __init__(self, max_entries: int = 10_000):
        self._states: "OrderedDict[Tuple[str, str], ConnectionState]" = OrderedDict()
        self._max_entries = max_entries

    def __len__(self) -> int:
        return len(self._states)

    def state(self, user_id: str, connector_id: str) -> ConnectionState:
        return self._states.get((user_id, connector_id), ConnectionState.DISCONNECTED)

    def apply(self, user_id: str, connector_id: str, event: LifecycleEvent) -> ConnectionState:
        current = self.state(user_id, connector_id)
        new = next_state(current, event)
        self._put(user_id, connector_id, new)
        if new != current:
            logger.info(
                "Connection %s/%s: %s -> %s (%s)",
                user_id,
                connector_id,
                current.value,
                new.value,
                event.value,
            )
        return new

    def try_apply(
        self, user_id: str, connector_id: str, event: LifecycleEvent
    ) -> Optional[ConnectionState]:
        """Like ``apply`` but returns None instead of raising on an illegal transition."""
        try:
            return self.apply(user_id, connector_id, event)
        except ValueError:
            return None

    def sync(self, user_id: str, connector_id: str, observed: ConnectionState) -> None:
        """Adopt the state observed upstream (e.g. after a connection fetch)."""
        self._put(user_id, connector_id, observed)

    def prune(self, user_id: str, present: Iterable[str]) -> None:
        """Forget the user's connectors missing upstream, except pending connect flows."""
        keep = set(present)
        stale = [
            key
            for key, state in self._states.items()
            if key[0] == user_id and key[1] not in keep and state != ConnectionState.PENDING
        ]
        for key in stale:
            del self._states[key]

    def _put(self, user_id: str, connector_id: str, state: ConnectionState) -> None:
        key = (user_id, connector_id)
        if state == ConnectionState.DISCONNECTED:
            self._states.pop(key, None)
            return
        self._states[key] = state
        self._states.move_to_end(key)
        while len(self._states) > self._max_entries:
            dropped, _ = self._states.popitem(last=False)
            logger.debug("Lifecycle tracker full; forgetting %s/%s", *dropped)
