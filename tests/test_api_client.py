"""
Tests for the HTTP API client.

Runs the client against an in-process aiohttp server that mimics the TaskFlow
auth endpoints, including access-token revocation for 401 recovery.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from aiohttp import web, test_utils

from taskflow_client.api_client import TaskflowAPIClient, RetryConfig, GrantPayload
from taskflow_client.auth.session_manager import SessionManager
from taskflow_client.auth.token_storage import CredentialStore, MemoryStorage
from taskflow_shared.exceptions import APIError, NetworkError, ErrorCode
from taskflow_shared.models import CredentialPair, LoginCredentials

from conftest import SessionSettings

USER = {
    'id': 42,
    'email': 'ada@example.com',
    'firstName': 'Ada',
    'lastName': 'Lovelace',
    'timezone': 'Europe/London',
}


class FakeTaskflowServer:
    """Just enough of the TaskFlow API to exercise the client."""

    def __init__(self):
        self.access_token = 'access-1'
        self.refresh_token = 'refresh-1'
        self.issued = 1
        self.refresh_calls = 0
        self.logouts = []
        self.url = None

        self.app = web.Application()
        self.app.router.add_post('/api/auth/login', self.login)
        self.app.router.add_post('/api/auth/refresh', self.refresh)
        self.app.router.add_post('/api/auth/logout', self.logout)
        self.app.router.add_get('/api/auth/me', self.me)
        self.app.router.add_put('/api/auth/profile', self.profile)
        self.app.router.add_get('/api/tasks', self.tasks)
        self.app.router.add_post('/api/tasks', self.create_task)
        self.app.router.add_get('/api/soft-fail', self.soft_fail)
        self.app.router.add_get('/api/not-json', self.not_json)
        self.app.router.add_get('/api/crash', self.crash)

    def revoke_access(self):
        self.access_token = 'revoked'

    def _grant(self):
        return {
            'accessToken': self.access_token,
            'refreshToken': self.refresh_token,
            'expiresIn': 3600,
            'user': USER,
        }

    def _authorized(self, request):
        return request.headers.get('Authorization') == f'Bearer {self.access_token}'

    @staticmethod
    def _unauthorized():
        return web.json_response(
            {'success': False, 'message': 'Token expired', 'code': 'TOKEN_EXPIRED'},
            status=401
        )

    async def login(self, request):
        body = await request.json()
        if body.get('email') == 'broken@example.com':
            return web.json_response({'success': True, 'data': {'accessToken': 'access-x'}})
        if body.get('password') != 'secret':
            return web.json_response(
                {'success': False, 'message': 'Invalid email or password', 'code': 'INVALID_CREDENTIALS'},
                status=401
            )
        return web.json_response({'success': True, 'data': self._grant()})

    async def refresh(self, request):
        body = await request.json()
        self.refresh_calls += 1
        await asyncio.sleep(0.01)
        if body.get('refreshToken') != self.refresh_token:
            return web.json_response({'success': False, 'message': 'Invalid refresh token'}, status=401)
        self.issued += 1
        self.access_token = f'access-{self.issued}'
        self.refresh_token = f'refresh-{self.issued}'
        return web.json_response({'success': True, 'data': self._grant()})

    async def logout(self, request):
        body = await request.json()
        self.logouts.append((request.headers.get('Authorization'), body.get('refreshToken')))
        return web.json_response({'success': True, 'data': None})

    async def me(self, request):
        if not self._authorized(request):
            return self._unauthorized()
        return web.json_response({'user': USER})

    async def profile(self, request):
        if not self._authorized(request):
            return self._unauthorized()
        updates = await request.json()
        return web.json_response({'success': True, 'data': {'user': dict(USER, **updates)}})

    async def tasks(self, request):
        if not self._authorized(request):
            return self._unauthorized()
        return web.json_response({'success': True, 'data': [{'id': 1, 'title': 'Write tests'}]})

    async def create_task(self, request):
        if not self._authorized(request):
            return self._unauthorized()
        body = await request.json()
        return web.json_response({'success': True, 'data': dict(body, id=2)}, status=201)

    async def soft_fail(self, request):
        return web.json_response({'success': False, 'message': 'Quota exceeded', 'code': 'QUOTA'})

    async def not_json(self, request):
        return web.Response(text='<html>proxy error</html>')

    async def crash(self, request):
        return web.Response(text='boom', status=500)


@pytest_asyncio.fixture
async def server():
    fake = FakeTaskflowServer()
    test_server = test_utils.TestServer(fake.app)
    await test_server.start_server()
    fake.url = str(test_server.make_url('/api'))
    yield fake
    await test_server.close()


@pytest_asyncio.fixture
async def client(server):
    async with TaskflowAPIClient(server.url, timeout=5, retry_config=RetryConfig(max_retries=0)) as api_client:
        yield api_client


@pytest_asyncio.fixture
async def session(client, clock):
    store = CredentialStore(MemoryStorage(), MemoryStorage())
    session_manager = SessionManager(
        client, store, config=SessionSettings(proactive_refresh=False), clock=clock
    )
    client.attach_session(session_manager)
    await session_manager.login(LoginCredentials('ada@example.com', 'secret'))
    yield session_manager
    await session_manager.shutdown()


class TestAuthEndpoints:
    """Test the auth endpoints consumed by the session manager."""

    @pytest.mark.asyncio
    async def test_login_parses_grant(self, client):
        """Test camelCase grants are accepted and the user id coerced."""
        grant = await client.login(LoginCredentials('ada@example.com', 'secret'))

        assert grant.access_token == 'access-1'
        assert grant.refresh_token == 'refresh-1'
        assert grant.expires_in == 3600
        assert grant.user.id == '42'
        assert grant.user.display_name == 'Ada Lovelace'
        assert grant.user.timezone == 'Europe/London'

    @pytest.mark.asyncio
    async def test_login_rejected(self, client):
        """Test a 401 envelope becomes APIError with the server's message."""
        with pytest.raises(APIError) as exc_info:
            await client.login(LoginCredentials('ada@example.com', 'wrong'))

        error = exc_info.value
        assert error.status_code == 401
        assert error.message == 'Invalid email or password'
        assert error.server_code == 'INVALID_CREDENTIALS'
        assert error.error_code == ErrorCode.API_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_malformed_grant(self, client):
        """Test a grant missing its refresh token is rejected."""
        with pytest.raises(APIError) as exc_info:
            await client.login(LoginCredentials('broken@example.com', 'secret'))

        assert exc_info.value.error_code == ErrorCode.API_MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_refresh_rotates_tokens(self, client):
        """Test the refresh endpoint returns a new pair."""
        grant = await client.refresh_token('refresh-1')

        assert grant.access_token == 'access-2'
        assert grant.refresh_token == 'refresh-2'

    @pytest.mark.asyncio
    async def test_logout_sends_both_tokens(self, client, server):
        """Test logout carries the bearer token and the refresh token."""
        credentials = CredentialPair('access-1', 'refresh-1', datetime.now() + timedelta(hours=1))

        await client.logout(credentials)

        assert server.logouts == [('Bearer access-1', 'refresh-1')]


class TestResponseHandling:
    """Test envelope unwrapping and error mapping."""

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope(self, client):
        """Test success=false on a 200 is still an error."""
        with pytest.raises(APIError) as exc_info:
            await client.get('/soft-fail')

        assert exc_info.value.message == 'Quota exceeded'
        assert exc_info.value.server_code == 'QUOTA'

    @pytest.mark.asyncio
    async def test_non_json_success(self, client):
        """Test an unparsable 2xx body is reported as malformed."""
        with pytest.raises(APIError) as exc_info:
            await client.get('/not-json')

        assert exc_info.value.error_code == ErrorCode.API_MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_server_error(self, client):
        """Test a plain-text 500 keeps its body as the message."""
        with pytest.raises(APIError) as exc_info:
            await client.get('/crash')

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == 'boom'
        assert exc_info.value.error_code == ErrorCode.API_SERVER_ERROR

    @pytest.mark.asyncio
    async def test_request_without_session(self, client):
        """Test an unattached client sends no bearer token."""
        with pytest.raises(APIError) as exc_info:
            await client.get('/tasks')

        assert exc_info.value.is_unauthorized

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        """Test connection failures become NetworkError."""
        async with TaskflowAPIClient(
            'http://127.0.0.1:9', timeout=2, retry_config=RetryConfig(max_retries=0)
        ) as api_client:
            with pytest.raises(NetworkError) as exc_info:
                await api_client.login(LoginCredentials('ada@example.com', 'secret'))

        assert exc_info.value.error_code in (ErrorCode.NETWORK_CONNECTION_FAILED, ErrorCode.NETWORK_TIMEOUT)

    def test_retry_backoff(self):
        """Test exponential backoff is capped at max_delay."""
        config = RetryConfig(base_delay=1.0, max_delay=10.0, jitter=False)

        assert [config.delay_for(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_grant_defaults(self):
        """Test snake_case grants and the default lifetime."""
        grant = GrantPayload.model_validate({'access_token': 'a', 'refresh_token': 'r'}).to_grant()

        assert grant.expires_in == 3600
        assert grant.token_type == 'Bearer'
        assert grant.user is None


class TestSessionRequests:
    """Test bearer requests through an attached session manager."""

    @pytest.mark.asyncio
    async def test_authorized_request(self, session, client):
        """Test requests carry the session's token."""
        tasks = await client.get('/tasks')

        assert tasks == [{'id': 1, 'title': 'Write tests'}]

    @pytest.mark.asyncio
    async def test_revoked_token_is_renewed(self, session, client, server):
        """Test a 401 renews the credential and replays the request."""
        server.revoke_access()

        tasks = await client.get('/tasks')

        assert tasks == [{'id': 1, 'title': 'Write tests'}]
        assert server.refresh_calls == 1
        assert session.get_access_token() == 'access-2'

    @pytest.mark.asyncio
    async def test_concurrent_401s_renew_once(self, session, client, server):
        """Test simultaneous 401s share one renewal."""
        server.revoke_access()

        results = await asyncio.gather(*(client.get('/tasks') for _ in range(4)))

        assert len(results) == 4
        assert server.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_unwrapped_user(self, session, client):
        """Test /auth/me answers without an envelope."""
        user = await client.get_current_user()

        assert user.id == '42'
        assert user.email == 'ada@example.com'

    @pytest.mark.asyncio
    async def test_identity_update_round_trip(self, session):
        """Test update_identity goes through the profile endpoint."""
        user = await session.update_identity({'timezone': 'America/New_York'})

        assert user.timezone == 'America/New_York'
        assert session.get_identity().timezone == 'America/New_York'

    @pytest.mark.asyncio
    async def test_logout_reaches_server(self, session, server):
        """Test a manual logout revokes the session server-side."""
        await session.logout()

        assert server.logouts == [('Bearer access-1', 'refresh-1')]
        assert session.get_access_token() is None

    @pytest.mark.asyncio
    async def test_post_resource(self, session, client):
        """Test POST bodies are sent as JSON and the envelope unwrapped."""
        task = await client.post('/tasks', {'title': 'Ship it'})

        assert task == {'title': 'Ship it', 'id': 2}

    @pytest.mark.asyncio
    async def test_put_after_revocation(self, session, client, server):
        """Test PUT requests are replayed with the renewed token."""
        server.revoke_access()

        result = await client.put('/auth/profile', {'firstName': 'Augusta'})

        assert result['user']['firstName'] == 'Augusta'
        assert server.refresh_calls == 1
