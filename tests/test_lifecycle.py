"""
Tests for the connection lifecycle state machine.
"""

import pytest

from connectors.lifecycle import (
    ConnectionLifecycle,
    ConnectionState,
    LifecycleEvent,
    next_state,
)


class TestTransitions:
    def test_happy_path(self):
        lifecycle = ConnectionLifecycle()
        assert lifecycle.state("u", "gmail") == ConnectionState.DISCONNECTED

        assert lifecycle.apply("u", "gmail", LifecycleEvent.TOKEN_ISSUED) == ConnectionState.PENDING
        assert lifecycle.apply("u", "gmail", LifecycleEvent.CALLBACK_SUCCEEDED) == ConnectionState.ACTIVE
        assert lifecycle.apply("u", "gmail", LifecycleEvent.AUTH_REVOKED) == ConnectionState.ERROR
        assert lifecycle.apply("u", "gmail", LifecycleEvent.REAUTHENTICATED) == ConnectionState.PENDING

    def test_cancelled_callback_returns_to_disconnected(self):
        lifecycle = ConnectionLifecycle()
        lifecycle.apply("u", "gmail", LifecycleEvent.TOKEN_ISSUED)
        assert lifecycle.apply("u", "gmail", LifecycleEvent.CALLBACK_FAILED) == ConnectionState.DISCONNECTED

    def test_inactive_reconnects_through_pending(self):
        assert next_state(ConnectionState.ACTIVE, LifecycleEvent.DEACTIVATED) == ConnectionState.INACTIVE
        assert next_state(ConnectionState.INACTIVE, LifecycleEvent.TOKEN_ISSUED) == ConnectionState.PENDING

    @pytest.mark.parametrize("state", list(ConnectionState))
    def test_disconnect_allowed_from_every_state(self, state):
        assert next_state(state, LifecycleEvent.DISCONNECTED) == ConnectionState.DISCONNECTED

    @pytest.mark.parametrize(
        "state, event",
        [
            (ConnectionState.DISCONNECTED, LifecycleEvent.CALLBACK_SUCCEEDED),
            (ConnectionState.DISCONNECTED, LifecycleEvent.AUTH_REVOKED),
            (ConnectionState.ACTIVE, LifecycleEvent.CALLBACK_SUCCEEDED),
            (ConnectionState.ERROR, LifecycleEvent.CALLBACK_SUCCEEDED),
        ],
    )
    def test_illegal_transitions(self, state, event):
        with pytest.raises(ValueError):
            next_state(state, event)

    def test_try_apply_leaves_state_alone_when_illegal(self):
        lifecycle = ConnectionLifecycle()
        assert lifecycle.try_apply("u", "gmail", LifecycleEvent.AUTH_REVOKED) is None
        assert lifecycle.state("u", "gmail") == ConnectionState.DISCONNECTED

    def test_states_are_per_user_and_connector(self):
        lifecycle = ConnectionLifecycle()
        lifecycle.apply("u1", "gmail", LifecycleEvent.TOKEN_ISSUED)
        assert lifecycle.state("u2", "gmail") == ConnectionState.DISCONNECTED
        assert lifecycle.state("u1", "slack") == ConnectionState.DISCONNECTED


class TestBounds:
    def test_disconnected_entries_are_not_kept(self):
        lifecycle = ConnectionLifecycle()
        lifecycle.apply("u", "gmail", LifecycleEvent.TOKEN_ISSUED)
        lifecycle.apply("u", "gmail", LifecycleEvent.DISCONNECTED)
        lifecycle.sync("u", "slack", ConnectionState.DISCONNECTED)
        assert len(lifecycle) == 0

    def test_least_recently_touched_entry_is_dropped(self):
        lifecycle = ConnectionLifecycle(max_entries=2)
        lifecycle.sync("u1", "gmail", ConnectionState.ACTIVE)
        lifecycle.sync("u2", "gmail", ConnectionState.ACTIVE)
        lifecycle.apply("u1", "gmail", LifecycleEvent.AUTH_REVOKED)
        lifecycle.sync("u3", "gmail", ConnectionState.ACTIVE)

        assert len(lifecycle) == 2
        assert lifecycle.state("u2", "gmail") == ConnectionState.DISCONNECTED
        assert lifecycle.state("u1", "gmail") == ConnectionState.ERROR
        assert lifecycle.state("u3", "gmail") == ConnectionState.ACTIVE

    def test_prune_forgets_missing_connectors_but_keeps_pending(self):
        lifecycle = ConnectionLifecycle()
        lifecycle.sync("u", "gmail", ConnectionState.ACTIVE)
        lifecycle.sync("u", "slack", ConnectionState.ERROR)
        lifecycle.apply("u", "notion", LifecycleEvent.TOKEN_ISSUED)
        lifecycle.sync("other", "slack", ConnectionState.ACTIVE)

        lifecycle.prune("u", ["gmail"])

        assert lifecycle.state("u", "gmail") == ConnectionState.ACTIVE
        assert lifecycle.state("u", "slack") == ConnectionState.DISCONNECTED
        assert lifecycle.state("u", "notion") == ConnectionState.PENDING
        assert lifecycle.state("other", "slack") == ConnectionState.ACTIVE
