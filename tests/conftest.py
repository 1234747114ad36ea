"""
Shared fixtures for the TaskFlow session client tests.
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from taskflow_client.auth.session_manager import SessionManager
from taskflow_client.auth.token_storage import CredentialStore, MemoryStorage
from taskflow_shared.interfaces import IAuthAPI
from taskflow_shared.models import AuthGrant, User


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SessionSettings:
    """Minimal stand-in for ClientConfiguration's session settings."""

    def __init__(self, inactivity_timeout=1800, refresh_margin=300, proactive_refresh=True):
        self.inactivity_timeout = inactivity_timeout
        self.refresh_margin = refresh_margin
        self.proactive_refresh = proactive_refresh

    def get_inactivity_timeout(self):
        return self.inactivity_timeout

    def get_refresh_margin(self):
        return self.refresh_margin

    def is_proactive_refresh_enabled(self):
        return self.proactive_refresh


def make_user(**overrides) -> User:
    data = {
        'id': 'user-1',
        'email': 'ada@example.com',
        'first_name': 'Ada',
        'last_name': 'Lovelace',
    }
    data.update(overrides)
    return User(**data)


def make_grant(access_token='access-1', refresh_token='refresh-1', expires_in=3600, user=None) -> AuthGrant:
    return AuthGrant(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        user=user or make_user()
    )


class GatedRefresh:
    """
    Refresh side effect that blocks until released.

    Lets a test hold a renewal in flight while other callers pile up.
    """

    def __init__(self, grant=None, error=None):
        self.grant = grant or make_grant('access-2', 'refresh-2')
        self.error = error
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def refresh(self, refresh_token):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.grant


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def durable_storage():
    return MemoryStorage()


@pytest.fixture
def ephemeral_storage():
    return MemoryStorage()


@pytest.fixture
def credential_store(durable_storage, ephemeral_storage):
    return CredentialStore(durable_storage, ephemeral_storage)


@pytest.fixture
def api():
    api = AsyncMock(spec=IAuthAPI)
    api.login.return_value = make_grant()
    api.register.return_value = make_grant()
    api.refresh_token.return_value = make_grant('access-2', 'refresh-2')
    api.logout.return_value = None
    api.update_profile.side_effect = lambda updates: make_user(**updates)
    api.change_password.return_value = None
    return api


@pytest.fixture
def settings():
    return SessionSettings()


@pytest_asyncio.fixture
async def manager(api, credential_store, settings, clock):
    session_manager = SessionManager(api, credential_store, config=settings, clock=clock)
    yield session_manager
    await session_manager.shutdown()
