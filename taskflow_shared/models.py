"""
Core data models for the TaskFlow session client.

This module defines the identity, credential and session structures shared by
the credential store, the session state machine and the session facade.
"""

import copy
from dataclasses import dataclass, field, fields, asdict, replace
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from enum import Enum


class SessionState(Enum):
    """Lifecycle states of the client session."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    EXPIRED = "expired"


class LogoutReason(Enum):
    """Why a session ended."""
    MANUAL = "manual"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class User:
    """Identity of the signed-in user as reported by the server."""
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    display_name: str = ""
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    timezone: str = "UTC"
    language_code: str = "en"
    role: str = "user"
    status: str = "active"
    email_verified: bool = False
    preferences: Dict[str, Any] = field(default_factory=dict)
    notification_settings: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("User ID cannot be empty")
        if not self.display_name:
            self.display_name = f"{self.first_name} {self.last_name}".strip() or self.email

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        """Build a user from a server or storage payload, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if 'id' in values:
            values['id'] = str(values['id'])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def merged(self, updates: Dict[str, Any]) -> 'User':
        """Return a copy with the known fields in ``updates`` applied."""
        known = {f.name for f in fields(self)} - {'id'}
        return replace(self, **{key: value for key, value in updates.items() if key in known})


@dataclass(frozen=True)
class CredentialPair:
    """
    Access/refresh credential pair issued by the server.

    Immutable; replaced wholesale on every login or renewal. ``expires_at`` is
    fixed at issue time from the server-declared lifetime.
    """
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "Bearer"

    @classmethod
    def issue(
        cls,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        issued_at: datetime,
        token_type: str = "Bearer"
    ) -> 'CredentialPair':
        """Create a pair whose expiry is ``issued_at + expires_in`` seconds."""
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=issued_at + timedelta(seconds=expires_in),
            token_type=token_type
        )

    def seconds_until_expiry(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class SessionRecord:
    """The authoritative in-memory session, owned by the session state machine."""
    identity: User
    credentials: CredentialPair
    session_id: str
    last_activity: datetime
    remember: bool = False

    def __post_init__(self):
        if not self.session_id:
            raise ValueError("Session ID cannot be empty")

    def snapshot(self) -> 'SessionRecord':
        """Detached copy safe to hand to callers."""
        return copy.deepcopy(self)


@dataclass(frozen=True)
class SessionStatus:
    """Read-only view of the session returned by ``current_state()``."""
    state: SessionState
    identity: Optional[User]
    is_authenticated: bool
    is_credential_expired: bool
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    logout_reason: Optional[LogoutReason] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'identity': self.identity.to_dict() if self.identity else None,
            'is_authenticated': self.is_authenticated,
            'is_credential_expired': self.is_credential_expired,
            'session_id': self.session_id,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'last_activity': self.last_activity.isoformat() if self.last_activity else None,
            'logout_reason': self.logout_reason.value if self.logout_reason else None,
            'message': self.message
        }


@dataclass
class LoginCredentials:
    """Login form input."""
    email: str
    password: str
    remember_me: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            'email': self.email,
            'password': self.password,
            'remember_me': self.remember_me
        }


@dataclass
class RegistrationData:
    """Registration form input."""
    email: str
    password: str
    first_name: str
    last_name: str
    timezone: Optional[str] = None
    language_code: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        return {key: value for key, value in payload.items() if value is not None}


@dataclass
class AuthGrant:
    """Successful response of the login, register and refresh endpoints."""
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    user: Optional[User] = None

    def to_credentials(self, issued_at: datetime) -> CredentialPair:
        return CredentialPair.issue(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_in=self.expires_in,
            issued_at=issued_at,
            token_type=self.token_type
        )
