"""
Tests for the session state machine.
"""

from datetime import datetime, timedelta

import pytest

from taskflow_client.auth.session_state import SessionStateMachine, TRANSITIONS
from taskflow_shared.exceptions import SessionStateError, ErrorCode
from taskflow_shared.models import (
    SessionState, LogoutReason, SessionRecord, CredentialPair
)

from conftest import make_user

NOW = datetime(2024, 1, 1, 12, 0, 0)


def make_record():
    return SessionRecord(
        identity=make_user(),
        credentials=CredentialPair('access-1', 'refresh-1', NOW + timedelta(hours=1)),
        session_id='session_abc',
        last_activity=NOW
    )


@pytest.fixture
def machine():
    return SessionStateMachine()


@pytest.fixture
def signed_in(machine):
    machine.begin_authentication()
    machine.authenticated(make_record())
    return machine


class TestTransitions:
    """Test legal and illegal state transitions."""

    def test_initial_state(self, machine):
        """Test a new machine holds no session."""
        assert machine.state == SessionState.UNAUTHENTICATED
        assert machine.has_session is False
        assert machine.session_id is None
        assert machine.snapshot() is None

    def test_login_path(self, machine):
        """Test UNAUTHENTICATED -> AUTHENTICATING -> AUTHENTICATED."""
        machine.begin_authentication()
        assert machine.state == SessionState.AUTHENTICATING

        machine.authenticated(make_record())

        assert machine.state == SessionState.AUTHENTICATED
        assert machine.session_id == 'session_abc'

    def test_failed_login_returns_to_unauthenticated(self, machine):
        """Test AUTHENTICATING -> UNAUTHENTICATED."""
        machine.begin_authentication()
        machine.authentication_failed()

        assert machine.state == SessionState.UNAUTHENTICATED
        assert machine.has_session is False

    def test_refresh_keeps_session_id(self, signed_in):
        """Test a renewal replaces credentials but not the session id."""
        renewed = CredentialPair('access-2', 'refresh-2', NOW + timedelta(hours=2))

        signed_in.begin_refresh()
        assert signed_in.state == SessionState.REFRESHING
        signed_in.refreshed(renewed, NOW + timedelta(minutes=5))

        record = signed_in.snapshot()
        assert signed_in.state == SessionState.AUTHENTICATED
        assert record.session_id == 'session_abc'
        assert record.credentials == renewed
        assert record.last_activity == NOW + timedelta(minutes=5)

    def test_expired_credential_can_be_renewed(self, signed_in):
        """Test AUTHENTICATED -> EXPIRED -> REFRESHING."""
        signed_in.mark_expired()
        signed_in.begin_refresh()

        assert signed_in.state == SessionState.REFRESHING

    @pytest.mark.parametrize('expired,expected', [
        (False, SessionState.AUTHENTICATED),
        (True, SessionState.EXPIRED),
    ])
    def test_restore(self, machine, expired, expected):
        """Test restoring a stored record skips AUTHENTICATING."""
        machine.restore(make_record(), credential_expired=expired)

        assert machine.state == expected
        assert machine.has_session is True

    def test_illegal_transition_raises(self, machine):
        """Test a transition outside the table is rejected."""
        with pytest.raises(SessionStateError) as exc_info:
            machine.mark_expired()

        assert exc_info.value.error_code == ErrorCode.AUTH_INVALID_STATE_TRANSITION
        assert machine.state == SessionState.UNAUTHENTICATED

    def test_authenticated_requires_authenticating(self, machine):
        """Test a grant cannot be adopted without an authentication attempt."""
        with pytest.raises(SessionStateError):
            machine.authenticated(make_record())

        assert machine.state == SessionState.UNAUTHENTICATED
        assert machine.has_session is False

    @pytest.mark.parametrize('expired', [False, True])
    def test_restore_only_when_signed_out(self, signed_in, expired):
        """Test restore cannot replace a live session."""
        with pytest.raises(SessionStateError):
            signed_in.restore(make_record(), credential_expired=expired)

        assert signed_in.state == SessionState.AUTHENTICATED

    def test_restore_rejected_during_authentication(self, machine):
        """Test restore cannot jump over an authentication in progress."""
        machine.begin_authentication()

        with pytest.raises(SessionStateError):
            machine.restore(make_record(), credential_expired=False)

        assert machine.state == SessionState.AUTHENTICATING
        assert machine.has_session is False

    def test_cannot_authenticate_twice(self, signed_in):
        """Test AUTHENTICATED -> AUTHENTICATING is not allowed."""
        with pytest.raises(SessionStateError):
            signed_in.begin_authentication()

    def test_refresh_requires_session(self, machine):
        """Test begin_refresh without a record."""
        with pytest.raises(SessionStateError):
            machine.begin_refresh()

    def test_every_state_has_an_exit(self):
        """Test every state can reach UNAUTHENTICATED or is it."""
        for state, targets in TRANSITIONS.items():
            assert state == SessionState.UNAUTHENTICATED or SessionState.UNAUTHENTICATED in targets


class TestTermination:
    """Test ending a session."""

    @pytest.mark.parametrize('reason,message', [
        (LogoutReason.MANUAL, None),
        (LogoutReason.TIMEOUT, "Session expired due to inactivity. Please log in again."),
        (LogoutReason.ERROR, "Session expired. Please log in again."),
    ])
    def test_terminate_records_reason(self, signed_in, reason, message):
        """Test the logout reason and its user-facing message."""
        dropped = signed_in.terminate(reason)

        assert dropped.session_id == 'session_abc'
        assert signed_in.state == SessionState.UNAUTHENTICATED
        assert signed_in.has_session is False
        assert signed_in.logout_reason == reason
        assert signed_in.logout_message == message

    def test_terminate_from_refreshing(self, signed_in):
        """Test termination is legal mid-renewal."""
        signed_in.begin_refresh()

        signed_in.terminate(LogoutReason.ERROR)

        assert signed_in.state == SessionState.UNAUTHENTICATED

    def test_terminate_without_session(self, machine):
        """Test terminating an idle machine is harmless."""
        assert machine.terminate(LogoutReason.MANUAL) is None
        assert machine.state == SessionState.UNAUTHENTICATED

    def test_new_login_clears_logout_reason(self, signed_in):
        """Test the logout message does not outlive the next login."""
        signed_in.terminate(LogoutReason.TIMEOUT)

        signed_in.begin_authentication()

        assert signed_in.logout_reason is None
        assert signed_in.logout_message is None


class TestSnapshotsAndListeners:
    """Test record isolation and change notification."""

    def test_snapshot_is_detached(self, signed_in):
        """Test mutating a snapshot leaves the live record alone."""
        snapshot = signed_in.snapshot()
        snapshot.identity.first_name = 'Changed'
        snapshot.identity.preferences['theme'] = 'dark'

        record = signed_in.snapshot()
        assert record.identity.first_name == 'Ada'
        assert record.identity.preferences == {}

    def test_listeners_see_every_transition(self, machine):
        """Test listeners receive (old, new) pairs in order."""
        seen = []
        machine.add_listener(lambda old, new: seen.append((old, new)))

        machine.begin_authentication()
        machine.authenticated(make_record())
        machine.terminate(LogoutReason.MANUAL)

        assert seen == [
            (SessionState.UNAUTHENTICATED, SessionState.AUTHENTICATING),
            (SessionState.AUTHENTICATING, SessionState.AUTHENTICATED),
            (SessionState.AUTHENTICATED, SessionState.UNAUTHENTICATED),
        ]

    def test_failing_listener_does_not_block_transition(self, machine):
        """Test a listener exception is logged, not raised."""
        def broken(old, new):
            raise RuntimeError("listener failed")

        machine.add_listener(broken)
        machine.begin_authentication()

        assert machine.state == SessionState.AUTHENTICATING

    def test_update_identity(self, signed_in):
        """Test the identity is replaced in place."""
        signed_in.update_identity(make_user(first_name='Grace'))

        assert signed_in.snapshot().identity.first_name == 'Grace'
        assert signed_in.session_id == 'session_abc'
