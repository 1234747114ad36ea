"""
Session state machine for the TaskFlow session client.

Holds the authoritative in-memory session record and enforces the legal
transitions between session states. Other components receive snapshots only.
"""

import logging
from datetime import datetime
from typing import Optional, Callable, List, Dict, FrozenSet

from taskflow_shared.exceptions import SessionStateError
from taskflow_shared.models import (
    SessionState, LogoutReason, SessionRecord, CredentialPair, User
)

logger = logging.getLogger(__name__)


TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.UNAUTHENTICATED: frozenset({
        SessionState.AUTHENTICATING,
    }),
    SessionState.AUTHENTICATING: frozenset({
        SessionState.AUTHENTICATED,
        SessionState.UNAUTHENTICATED,
    }),
    SessionState.AUTHENTICATED: frozenset({
        SessionState.REFRESHING,
        SessionState.EXPIRED,
        SessionState.UNAUTHENTICATED,
    }),
    SessionState.REFRESHING: frozenset({
        SessionState.AUTHENTICATED,
        SessionState.UNAUTHENTICATED,
    }),
    SessionState.EXPIRED: frozenset({
        SessionState.REFRESHING,
        SessionState.UNAUTHENTICATED,
    }),
}

LOGOUT_MESSAGES: Dict[LogoutReason, Optional[str]] = {
    LogoutReason.MANUAL: None,
    LogoutReason.TIMEOUT: "Session expired due to inactivity. Please log in again.",
    LogoutReason.ERROR: "Session expired. Please log in again.",
}

StateListener = Callable[[SessionState, SessionState], None]


class SessionStateMachine:
    """
    Owner of the live ``SessionRecord``.

    ``restore`` is the only way into a session without ``AUTHENTICATING``: it
    adopts a stored record from ``UNAUTHENTICATED`` only, landing in
    ``AUTHENTICATED`` or, when the stored access credential is already past
    expiry, ``EXPIRED``. ``terminate`` is legal from every state and always
    lands in ``UNAUTHENTICATED`` with no record.
    """

    def __init__(self):
        self._state = SessionState.UNAUTHENTICATED
        self._record: Optional[SessionRecord] = None
        self._logout_reason: Optional[LogoutReason] = None
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def has_session(self) -> bool:
        return self._record is not None

    @property
    def session_id(self) -> Optional[str]:
        return self._record.session_id if self._record else None

    @property
    def logout_reason(self) -> Optional[LogoutReason]:
        return self._logout_reason

    @property
    def logout_message(self) -> Optional[str]:
        if self._logout_reason is None:
            return None
        return LOGOUT_MESSAGES[self._logout_reason]

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> Optional[SessionRecord]:
        """Detached copy of the current record, or None."""
        return self._record.snapshot() if self._record else None

    def can_transition(self, new_state: SessionState) -> bool:
        return new_state in TRANSITIONS[self._state]

    def _illegal(self, new_state: SessionState) -> SessionStateError:
        return SessionStateError(
            f"Illegal session transition {self._state.value} -> {new_state.value}",
            context={'from': self._state.value, 'to': new_state.value}
        )

    def _transition(self, new_state: SessionState) -> None:
        if not self.can_transition(new_state):
            raise self._illegal(new_state)
        self._enter(new_state)

    def _enter(self, new_state: SessionState) -> None:
        old_state = self._state
        self._state = new_state
        logger.debug(f"Session state {old_state.value} -> {new_state.value}")

        for listener in self._listeners:
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"Error in session state listener: {e}")

    # Transitions

    def begin_authentication(self) -> None:
        self._transition(SessionState.AUTHENTICATING)
        self._logout_reason = None

    def authentication_failed(self) -> None:
        self._transition(SessionState.UNAUTHENTICATED)

    def authenticated(self, record: SessionRecord) -> None:
        self._transition(SessionState.AUTHENTICATED)
        self._record = record

    def restore(self, record: SessionRecord, credential_expired: bool) -> None:
        """Adopt a record reconstructed from storage."""
        new_state = SessionState.EXPIRED if credential_expired else SessionState.AUTHENTICATED
        if self._state != SessionState.UNAUTHENTICATED:
            raise self._illegal(new_state)
        self._enter(new_state)
        self._record = record
        self._logout_reason = None

    def mark_expired(self) -> None:
        self._transition(SessionState.EXPIRED)

    def begin_refresh(self) -> None:
        if self._record is None:
            raise SessionStateError("Cannot refresh without a session")
        self._transition(SessionState.REFRESHING)

    def refreshed(self, credentials: CredentialPair, last_activity: datetime) -> None:
        """Replace the credential pair in place; the session id is kept."""
        self._transition(SessionState.AUTHENTICATED)
        self._record.credentials = credentials
        self._record.last_activity = last_activity

    def touch(self, last_activity: datetime) -> None:
        if self._record is None:
            raise SessionStateError("No session to record activity on")
        self._record.last_activity = last_activity

    def update_identity(self, identity: User) -> None:
        if self._record is None:
            raise SessionStateError("No session to update identity on")
        self._record.identity = identity

    def terminate(self, reason: LogoutReason) -> Optional[SessionRecord]:
        """
        End the session from any state.

        Returns:
            The record that was dropped, if any
        """
        record = self._record
        self._record = None
        self._logout_reason = reason

        if self._state != SessionState.UNAUTHENTICATED:
            self._transition(SessionState.UNAUTHENTICATED)

        return record
