"""
Session Manager for the TaskFlow session client.

This module is the single surface the rest of the client uses for
authentication: login, registration, logout, credential renewal, identity
updates and activity tracking. It owns the session state machine, both
session timers and the renewal coordinator, and keeps the credential store in
step with every transition.
"""

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable, List
from jose import jwt, JWTError

from taskflow_client.auth.inactivity import InactivityMonitor, DEFAULT_INACTIVITY_WINDOW
from taskflow_client.auth.renewal import RenewalCoordinator
from taskflow_client.auth.scheduler import ProactiveScheduler, DEFAULT_REFRESH_MARGIN
from taskflow_client.auth.session_state import SessionStateMachine
from taskflow_client.auth.token_storage import CredentialStore
from taskflow_shared.exceptions import (
    TaskflowError, AuthenticationError, RegistrationError, RenewalError,
    IdentityUpdateError, APIError, ErrorCode
)
from taskflow_shared.interfaces import IAuthAPI
from taskflow_shared.logging_config import AuditLogger, AuditEventType, log_structured_error, mask_token
from taskflow_shared.models import (
    SessionState, LogoutReason, SessionRecord, SessionStatus, CredentialPair,
    LoginCredentials, RegistrationData, AuthGrant, User
)

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Manages the authenticated session with automatic renewal and timeout.

    Every renewal, whether proactive or triggered by a 401, runs through
    ``refresh()`` and therefore through the one ``RenewalCoordinator``.
    Renewal failure ends the session for everyone with reason ``ERROR``;
    inactivity ends it with reason ``TIMEOUT``.
    """

    def __init__(
        self,
        api_client: IAuthAPI,
        credential_store: CredentialStore,
        config=None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.api_client = api_client
        self.credential_store = credential_store
        self.config = config
        self._clock = clock or datetime.now

        if config is not None:
            inactivity_window = config.get_inactivity_timeout()
            refresh_margin = config.get_refresh_margin()
            self._proactive_refresh = config.is_proactive_refresh_enabled()
        else:
            inactivity_window = DEFAULT_INACTIVITY_WINDOW
            refresh_margin = DEFAULT_REFRESH_MARGIN
            self._proactive_refresh = True

        self._state = SessionStateMachine()
        self.coordinator = RenewalCoordinator(self._perform_refresh, self.get_access_token)
        self.scheduler = ProactiveScheduler(refresh_margin, self._on_renewal_due, self._clock)
        self.inactivity = InactivityMonitor(inactivity_window, self._on_inactivity_timeout, self._clock)
        self.audit = AuditLogger()

        self._last_error: Optional[TaskflowError] = None
        self._auth_attempt = 0

        # Callbacks for session events
        self._auth_callbacks: List[Callable[[bool], None]] = []
        self._token_refresh_callbacks: List[Callable[[str], None]] = []
        self._logout_callbacks: List[Callable[[LogoutReason, Optional[str]], None]] = []

        logger.info("Session manager initialized")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    # Callbacks

    def add_auth_callback(self, callback: Callable[[bool], None]) -> None:
        """
        Add callback for authentication state changes.

        Args:
            callback: Function called with authentication status (bool)
        """
        self._auth_callbacks.append(callback)

    def add_token_refresh_callback(self, callback: Callable[[str], None]) -> None:
        """
        Add callback for credential renewal events.

        Args:
            callback: Function called with the new access token (str)
        """
        self._token_refresh_callbacks.append(callback)

    def add_logout_callback(self, callback: Callable[[LogoutReason, Optional[str]], None]) -> None:
        """
        Add callback for ended sessions.

        Args:
            callback: Function called with the logout reason and the message to
                show on the login surface (None for manual logout)
        """
        self._logout_callbacks.append(callback)

    def add_state_listener(self, listener: Callable[[SessionState, SessionState], None]) -> None:
        self._state.add_listener(listener)

    def _notify_auth_change(self, is_authenticated: bool) -> None:
        """Notify callbacks of authentication state change."""
        for callback in self._auth_callbacks:
            try:
                callback(is_authenticated)
            except Exception as e:
                logger.error(f"Error in auth callback: {e}")

    def _notify_token_refresh(self, new_token: str) -> None:
        """Notify callbacks of credential renewal."""
        for callback in self._token_refresh_callbacks:
            try:
                callback(new_token)
            except Exception as e:
                logger.error(f"Error in token refresh callback: {e}")

    def _notify_logout(self, reason: LogoutReason, message: Optional[str]) -> None:
        for callback in self._logout_callbacks:
            try:
                callback(reason, message)
            except Exception as e:
                logger.error(f"Error in logout callback: {e}")

    # State queries

    @property
    def state(self) -> SessionState:
        return self._state.state

    @property
    def last_error(self) -> Optional[TaskflowError]:
        return self._last_error

    @property
    def logout_reason(self) -> Optional[LogoutReason]:
        return self._state.logout_reason

    @property
    def session_id(self) -> Optional[str]:
        return self._state.session_id

    def _now(self) -> datetime:
        return self._clock()

    def _jwt_expired(self, token: str) -> bool:
        """True when ``token`` is a JWT whose ``exp`` claim has passed."""
        try:
            payload = jwt.get_unverified_claims(token)
        except JWTError:
            return False

        exp = payload.get('exp')
        if exp is None:
            return False
        try:
            return datetime.fromtimestamp(exp) <= self._now()
        except (TypeError, ValueError, OverflowError):
            return False

    def get_access_token(self) -> Optional[str]:
        """
        Get the current access token.

        Returns:
            The token, or None when there is no session or the token is known
            to be expired
        """
        record = self._state.snapshot()
        if record is None:
            return None

        token = record.credentials.access_token
        if record.credentials.is_expired(self._now()) or self._jwt_expired(token):
            return None
        return token

    def get_auth_headers(self) -> Dict[str, str]:
        token = self.get_access_token()
        return {'Authorization': f'Bearer {token}'} if token else {}

    def can_refresh(self) -> bool:
        record = self._state.snapshot()
        return record is not None and bool(record.credentials.refresh_token)

    def is_authenticated(self) -> bool:
        return self._state.state in (SessionState.AUTHENTICATED, SessionState.REFRESHING)

    def is_credential_expired(self) -> bool:
        """True once renewal is due, and whenever there is no credential."""
        record = self._state.snapshot()
        if record is None:
            return True
        return self.scheduler.is_due(record.credentials)

    def check_session(self) -> bool:
        """True while the inactivity window has not yet elapsed."""
        record = self._state.snapshot()
        return record is not None and not self.inactivity.has_elapsed(record.last_activity)

    def current_state(self) -> SessionStatus:
        record = self._state.snapshot()
        return SessionStatus(
            state=self._state.state,
            identity=record.identity if record else None,
            is_authenticated=self.is_authenticated(),
            is_credential_expired=self.is_credential_expired(),
            session_id=record.session_id if record else None,
            expires_at=record.credentials.expires_at if record else None,
            last_activity=record.last_activity if record else None,
            logout_reason=self._state.logout_reason,
            message=self._state.logout_message
        )

    def get_identity(self) -> Optional[User]:
        record = self._state.snapshot()
        return record.identity if record else None

    # Login and registration

    @staticmethod
    def _new_session_id() -> str:
        return f"session_{uuid.uuid4().hex}"

    async def login(self, credentials: LoginCredentials) -> SessionRecord:
        """
        Authenticate with email and password.

        Args:
            credentials: Login form input; ``remember_me`` selects durable
                storage for this session

        Returns:
            Snapshot of the new session

        Raises:
            AuthenticationError: Invalid input, rejected credentials, or an
                unreachable server; no session is created
        """
        missing = [name for name in ('email', 'password') if not getattr(credentials, name)]
        if missing:
            error = AuthenticationError(
                f"Missing required field(s): {', '.join(missing)}",
                ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD,
                context={'fields': missing}
            )
            self._last_error = error
            raise error

        return await self._authenticate(
            credentials.email,
            lambda: self.api_client.login(credentials),
            remember=credentials.remember_me,
            registration=False
        )

    async def register(self, data: RegistrationData) -> SessionRecord:
        """
        Create an account and sign in to it.

        Registered sessions are never remembered across restarts.

        Raises:
            RegistrationError: Invalid input or the server refused the account
        """
        missing = [
            name for name in ('email', 'password', 'first_name', 'last_name')
            if not getattr(data, name)
        ]
        if missing:
            error = RegistrationError(
                f"Missing required field(s): {', '.join(missing)}",
                ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD,
                context={'fields': missing}
            )
            self._last_error = error
            raise error

        return await self._authenticate(
            data.email,
            lambda: self.api_client.register(data),
            remember=False,
            registration=True
        )

    async def _authenticate(
        self,
        email: str,
        issue: Callable,
        remember: bool,
        registration: bool
    ) -> SessionRecord:
        error_class = RegistrationError if registration else AuthenticationError
        action = "Registration" if registration else "Login"

        if self._state.state == SessionState.AUTHENTICATING:
            error = error_class(
                f"{action} rejected: another sign-in is already in progress",
                ErrorCode.AUTH_INVALID_STATE_TRANSITION
            )
            self._last_error = error
            raise error

        if self._state.has_session:
            logger.info("Replacing the current session")
            await self._end_session(LogoutReason.MANUAL, notify_server=False)

        self._state.begin_authentication()
        self._auth_attempt += 1
        attempt = self._auth_attempt
        logger.info(f"{action} attempt for {email}")

        try:
            grant: AuthGrant = await issue()
            if grant.user is None:
                raise APIError(
                    "Credential grant did not include the user",
                    status_code=200,
                    error_code=ErrorCode.API_MALFORMED_RESPONSE
                )
        except asyncio.CancelledError:
            if self._is_current_attempt(attempt):
                self._state.authentication_failed()
            raise
        except Exception as e:
            if self._is_current_attempt(attempt):
                self._state.authentication_failed()
            if isinstance(e, TaskflowError) and not isinstance(e, APIError):
                error_code = e.error_code
            elif registration:
                error_code = ErrorCode.AUTH_REGISTRATION_FAILED
            else:
                error_code = ErrorCode.AUTH_INVALID_CREDENTIALS
            error = error_class(
                f"{action} failed: {getattr(e, 'message', str(e))}",
                error_code,
                cause=e,
                user_message=getattr(e, 'message', None)
            )
            self._last_error = error
            self.audit.log_authentication(
                email, success=False, failure_reason=error.message, registration=registration
            )
            logger.warning(error.message)
            raise error from e

        if not self._is_current_attempt(attempt):
            # Logged out while the grant was in flight
            error = error_class(f"{action} abandoned: the session was ended", ErrorCode.AUTH_SESSION_ENDED)
            self._last_error = error
            logger.warning(error.message)
            await self._revoke_grant(grant)
            raise error

        record = self._establish(grant, remember)
        self._last_error = None
        self.audit.log_authentication(
            email,
            user_id=record.identity.id,
            session_id=record.session_id,
            success=True,
            registration=registration
        )
        logger.info(f"{action} successful for {email} (session {record.session_id})")
        return record

    def _is_current_attempt(self, attempt: int) -> bool:
        return attempt == self._auth_attempt and self._state.state == SessionState.AUTHENTICATING

    async def _revoke_grant(self, grant: AuthGrant) -> None:
        """Best-effort server logout for a grant that will never be used."""
        try:
            await self.api_client.logout(grant.to_credentials(self._now()))
        except Exception as e:
            logger.warning(f"Could not revoke abandoned grant: {e}")

    def _establish(self, grant: AuthGrant, remember: bool) -> SessionRecord:
        now = self._now()
        record = SessionRecord(
            identity=grant.user,
            credentials=grant.to_credentials(now),
            session_id=self._new_session_id(),
            last_activity=now,
            remember=remember
        )

        self._state.authenticated(record)
        self.credential_store.save_record(record)
        self._schedule_renewal(record.credentials)
        self.inactivity.restart()
        self._notify_auth_change(True)
        return record.snapshot()

    async def restore(self) -> bool:
        """
        Silently recover a stored session on startup.

        Returns:
            True if a session is active afterwards
        """
        if self._state.has_session:
            return True
        if self._state.state != SessionState.UNAUTHENTICATED:
            logger.info("Sign-in in progress, stored session not restored")
            return False

        record = self.credential_store.load_record()
        if record is None:
            self.credential_store.clear()
            logger.info("No stored session to restore")
            return False

        if self.inactivity.has_elapsed(record.last_activity):
            logger.info(f"Stored session {record.session_id} expired due to inactivity")
            self.credential_store.clear()
            self._state.terminate(LogoutReason.TIMEOUT)
            self.audit.log_logout(record.session_id, record.identity.id, LogoutReason.TIMEOUT.value)
            return False

        self._state.restore(record, credential_expired=record.credentials.is_expired(self._now()))
        self.audit.log_event(
            AuditEventType.SESSION_RESTORE,
            f"Session restored for {record.identity.email}",
            user_id=record.identity.id,
            session_id=record.session_id,
            result="success",
            additional_context={'remember': record.remember}
        )

        if self.scheduler.is_due(record.credentials):
            logger.info("Restored credential is due for renewal")
            try:
                await self.refresh()
            except RenewalError as e:
                logger.warning(f"Could not renew restored session: {e.message}")
                return False
        else:
            self._schedule_renewal(record.credentials)

        self.inactivity.resume(record.last_activity)
        self._notify_auth_change(True)
        logger.info(f"Restored session {record.session_id}")
        return True

    # Logout

    async def logout(self, reason: LogoutReason = LogoutReason.MANUAL) -> None:
        """
        End the session.

        Manual logouts also invalidate the session on the server; a failure
        there is logged and otherwise ignored.
        """
        await self._end_session(reason)

    async def _end_session(self, reason: LogoutReason, notify_server: Optional[bool] = None) -> None:
        if notify_server is None:
            notify_server = reason == LogoutReason.MANUAL

        self.scheduler.cancel()
        self.inactivity.cancel()

        record = self._state.terminate(reason)
        self.credential_store.clear()

        if record is None:
            logger.debug(f"Logout ({reason.value}) with no active session")
            return

        logger.info(f"Session {record.session_id} ended ({reason.value})")
        self.audit.log_logout(record.session_id, record.identity.id, reason.value)

        if notify_server:
            try:
                await self.api_client.logout(record.credentials)
            except Exception as e:
                logger.warning(f"Server logout failed, session cleared locally: {e}")

        self._notify_logout(reason, self._state.logout_message)
        self._notify_auth_change(False)

    # Renewal

    async def refresh(self) -> CredentialPair:
        """
        Renew the credential pair.

        Concurrent callers share one renewal call.

        Raises:
            RenewalError: The renewal failed and the session has been ended
        """
        return await self.coordinator.renew()

    async def _perform_refresh(self) -> CredentialPair:
        """The only code path that calls the renewal endpoint."""
        record = self._state.snapshot()
        if record is None:
            raise RenewalError("No session to renew", ErrorCode.AUTH_NO_REFRESH_TOKEN)

        session_id = record.session_id
        if self._state.state == SessionState.AUTHENTICATED and record.credentials.is_expired(self._now()):
            self._state.mark_expired()
        self._state.begin_refresh()
        logger.info(f"Renewing credentials (refresh token {mask_token(record.credentials.refresh_token)})")

        try:
            grant = await self.api_client.refresh_token(record.credentials.refresh_token)
        except asyncio.CancelledError:
            if self._state.session_id == session_id and self._state.state == SessionState.REFRESHING:
                self._state.refreshed(record.credentials, record.last_activity)
            raise
        except Exception as e:
            if self._state.session_id != session_id:
                raise RenewalError(
                    "Session ended while renewal was in flight",
                    ErrorCode.AUTH_SESSION_ENDED,
                    cause=e
                ) from e

            error = RenewalError(f"Credential renewal failed: {getattr(e, 'message', str(e))}", cause=e)
            self._last_error = error
            log_structured_error(logger, error, session_id)
            self.audit.log_token_refresh(session_id, success=False, error_message=error.message)
            self.audit.log_error(error, session_id)
            await self._end_session(LogoutReason.ERROR)
            raise error from e

        if self._state.session_id != session_id or self._state.state != SessionState.REFRESHING:
            logger.warning("Discarding renewed credentials for a session that has ended")
            raise RenewalError("Session ended while renewal was in flight", ErrorCode.AUTH_SESSION_ENDED)

        now = self._now()
        credentials = grant.to_credentials(now)
        self._state.refreshed(credentials, now)
        self.credential_store.save_credentials(credentials, record.remember)
        self.credential_store.save_last_activity(now, record.remember)

        if grant.user is not None:
            self._state.update_identity(grant.user)
            self.credential_store.save_identity(grant.user, record.remember)

        self._schedule_renewal(credentials)
        self.audit.log_token_refresh(session_id, success=True)
        logger.info(f"Credentials renewed, valid until {credentials.expires_at.isoformat()}")

        self._notify_token_refresh(credentials.access_token)
        return credentials

    def _schedule_renewal(self, credentials: CredentialPair) -> None:
        if self._proactive_refresh:
            self.scheduler.schedule(credentials)

    async def _on_renewal_due(self) -> None:
        logger.info("Proactive credential renewal triggered")
        try:
            await self.refresh()
        except RenewalError as e:
            logger.warning(f"Proactive renewal failed: {e.message}")

    async def _on_inactivity_timeout(self) -> None:
        logger.info("Inactivity window elapsed, ending session")
        await self._end_session(LogoutReason.TIMEOUT)

    # Activity and identity

    def extend_activity(self) -> None:
        """Record user activity and restart the inactivity window."""
        record = self._state.snapshot()
        if record is None:
            return

        now = self._now()
        self._state.touch(now)
        self.credential_store.save_last_activity(now, record.remember)
        self.inactivity.restart()

    def _require_session(self) -> SessionRecord:
        record = self._state.snapshot()
        if record is None:
            raise IdentityUpdateError("Not authenticated", ErrorCode.AUTH_NOT_AUTHENTICATED)
        return record

    async def update_identity(self, partial: Dict[str, Any]) -> User:
        """
        Update profile fields on the server and in the session.

        Args:
            partial: Profile fields to change

        Returns:
            The updated identity

        Raises:
            IdentityUpdateError: No session, or the server refused the update
            RenewalError: A renewal needed to send the update failed
        """
        record = self._require_session()
        session_id = record.session_id

        try:
            server_identity = await self.api_client.update_profile(partial)
        except RenewalError:
            raise
        except Exception as e:
            error = IdentityUpdateError(f"Profile update failed: {getattr(e, 'message', str(e))}", cause=e)
            self._last_error = error
            self.audit.log_error(error, session_id)
            raise error from e

        if self._state.session_id != session_id:
            raise IdentityUpdateError("Session ended during profile update", ErrorCode.AUTH_SESSION_ENDED)

        identity = server_identity if server_identity is not None else record.identity.merged(partial)
        self._state.update_identity(identity)
        self.credential_store.save_identity(identity, record.remember)
        self.audit.log_event(
            AuditEventType.IDENTITY_UPDATE,
            f"Profile updated for {identity.email}",
            user_id=identity.id,
            session_id=session_id,
            result="success",
            additional_context={'fields': sorted(partial)}
        )
        self.extend_activity()
        return copy.deepcopy(identity)

    async def update_preferences(self, preferences: Dict[str, Any]) -> User:
        record = self._require_session()
        merged = {**record.identity.preferences, **preferences}
        return await self.update_identity({'preferences': merged})

    async def change_password(self, current_password: str, new_password: str) -> None:
        self._require_session()
        if not current_password or not new_password:
            raise IdentityUpdateError(
                "Current and new password are required",
                ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD
            )

        try:
            await self.api_client.change_password(current_password, new_password)
        except RenewalError:
            raise
        except Exception as e:
            error = IdentityUpdateError(
                f"Password change failed: {getattr(e, 'message', str(e))}",
                ErrorCode.AUTH_PASSWORD_CHANGE_FAILED,
                cause=e
            )
            self._last_error = error
            raise error from e

        logger.info("Password changed")
        self.extend_activity()

    def time_until_expiry(self) -> Optional[timedelta]:
        record = self._state.snapshot()
        if record is None:
            return None
        return record.credentials.expires_at - self._now()

    async def shutdown(self) -> None:
        """Stop both timers; stored credentials are left in place."""
        logger.info("Shutting down session manager")
        await self.scheduler.shutdown()
        await self.inactivity.shutdown()
