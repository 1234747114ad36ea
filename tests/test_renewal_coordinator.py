"""
Tests for single-flight credential renewal.
"""

import asyncio
from datetime import datetime

import pytest

from taskflow_client.auth.renewal import RenewalCoordinator
from taskflow_shared.exceptions import APIError, RenewalError
from taskflow_shared.models import CredentialPair

EXPIRES = datetime(2024, 1, 1, 13, 0, 0)


class Renewer:
    """Renew callback that waits for the test before finishing."""

    def __init__(self, error=None):
        self.error = error
        self.calls = 0
        self.token = 'access-1'
        self.release = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        if self.error is not None:
            raise self.error
        self.token = f'access-{self.calls + 1}'
        return CredentialPair(self.token, f'refresh-{self.calls + 1}', EXPIRES)

    def current_token(self):
        return self.token


class Endpoint:
    """Fake request sender accepting only one token."""

    def __init__(self, valid_token):
        self.valid_token = valid_token
        self.tokens = []

    async def send(self, token):
        self.tokens.append(token)
        if token != self.valid_token:
            raise APIError("Unauthorized", status_code=401)
        return {'ok': True}


@pytest.fixture
def renewer():
    return Renewer()


@pytest.fixture
def coordinator(renewer):
    return RenewalCoordinator(renewer, renewer.current_token)


async def until(condition):
    while not condition():
        await asyncio.sleep(0)


class TestRenew:
    """Test renew() single-flight behavior."""

    @pytest.mark.asyncio
    async def test_single_caller(self, coordinator, renewer):
        """Test a lone renewal returns the new pair and releases ownership."""
        renewer.release.set()

        credentials = await coordinator.renew()

        assert credentials.access_token == 'access-2'
        assert coordinator.in_flight is False
        assert coordinator.renewal_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self, coordinator, renewer):
        """Test callers arriving mid-renewal wait for the same result."""
        tasks = [asyncio.create_task(coordinator.renew()) for _ in range(5)]
        await until(lambda: coordinator.waiter_count == 4)

        assert coordinator.in_flight is True
        renewer.release.set()
        results = await asyncio.gather(*tasks)

        assert renewer.calls == 1
        assert {result.access_token for result in results} == {'access-2'}
        assert coordinator.in_flight is False
        assert coordinator.waiter_count == 0

    @pytest.mark.asyncio
    async def test_waiters_settled_in_arrival_order(self, coordinator, renewer):
        """Test waiters resume FIFO."""
        order = []

        async def join(index):
            await coordinator.renew()
            order.append(index)

        owner = asyncio.create_task(coordinator.renew())
        waiters = []
        for index in range(3):
            waiters.append(asyncio.create_task(join(index)))
            await until(lambda: coordinator.waiter_count == index + 1)

        renewer.release.set()
        await asyncio.gather(owner, *waiters)

        assert order == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self, coordinator, renewer):
        """Test every caller sees the same RenewalError."""
        renewer.error = RuntimeError("server rejected refresh token")
        tasks = [asyncio.create_task(coordinator.renew()) for _ in range(3)]
        await until(lambda: coordinator.waiter_count == 2)

        renewer.release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(result, RenewalError) for result in results)
        assert len({id(result) for result in results}) == 1
        assert isinstance(results[0].cause, RuntimeError)
        assert coordinator.in_flight is False

    @pytest.mark.asyncio
    async def test_renewal_error_passes_through(self, coordinator, renewer):
        """Test a RenewalError from the callback is not re-wrapped."""
        error = RenewalError("refresh token revoked")
        renewer.error = error
        renewer.release.set()

        with pytest.raises(RenewalError) as exc_info:
            await coordinator.renew()

        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_next_renewal_after_failure(self, coordinator, renewer):
        """Test ownership is released after a failure."""
        renewer.error = RuntimeError("boom")
        renewer.release.set()
        with pytest.raises(RenewalError):
            await coordinator.renew()

        renewer.error = None
        credentials = await coordinator.renew()

        assert renewer.calls == 2
        assert credentials.access_token == 'access-3'

    @pytest.mark.asyncio
    async def test_cancelled_owner_hands_over_to_waiters(self, coordinator, renewer):
        """Test waiters run a fresh renewal when the owner is cancelled."""
        owner = asyncio.create_task(coordinator.renew())
        waiters = [asyncio.create_task(coordinator.renew()) for _ in range(2)]
        await until(lambda: coordinator.waiter_count == 2)

        owner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await owner

        await until(lambda: renewer.calls == 2 and coordinator.waiter_count == 1)
        assert coordinator.in_flight is True
        renewer.release.set()
        results = await asyncio.gather(*waiters)

        assert {result.access_token for result in results} == {'access-3'}
        assert renewer.calls == 2
        assert coordinator.in_flight is False


class TestDispatch:
    """Test request dispatch with 401 recovery."""

    @pytest.mark.asyncio
    async def test_success_needs_no_renewal(self, coordinator, renewer):
        """Test an accepted token is sent once."""
        endpoint = Endpoint('access-1')

        result = await coordinator.dispatch(endpoint.send, 'access-1')

        assert result == {'ok': True}
        assert endpoint.tokens == ['access-1']
        assert renewer.calls == 0

    @pytest.mark.asyncio
    async def test_unauthorized_renews_and_replays(self, coordinator, renewer):
        """Test a 401 renews then replays with the new token."""
        endpoint = Endpoint('access-2')
        renewer.release.set()

        result = await coordinator.dispatch(endpoint.send, 'access-1')

        assert result == {'ok': True}
        assert endpoint.tokens == ['access-1', 'access-2']
        assert renewer.calls == 1

    @pytest.mark.asyncio
    async def test_replay_is_not_retried(self, coordinator, renewer):
        """Test a 401 on the replay goes to the caller."""
        endpoint = Endpoint('never-valid')
        renewer.release.set()

        with pytest.raises(APIError) as exc_info:
            await coordinator.dispatch(endpoint.send, 'access-1')

        assert exc_info.value.status_code == 401
        assert len(endpoint.tokens) == 2
        assert renewer.calls == 1

    @pytest.mark.asyncio
    async def test_stale_token_replays_with_current(self, coordinator, renewer):
        """Test a request sent with an already-replaced token skips renewal."""
        renewer.token = 'access-9'
        endpoint = Endpoint('access-9')

        result = await coordinator.dispatch(endpoint.send, 'access-1')

        assert result == {'ok': True}
        assert endpoint.tokens == ['access-1', 'access-9']
        assert renewer.calls == 0

    @pytest.mark.asyncio
    async def test_not_renewable(self, coordinator, renewer):
        """Test 401s on non-renewable requests propagate untouched."""
        endpoint = Endpoint('access-2')

        with pytest.raises(APIError):
            await coordinator.dispatch(endpoint.send, None, renewable=False)

        assert renewer.calls == 0

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, coordinator, renewer):
        """Test non-401 failures never trigger renewal."""
        async def send(token):
            raise APIError("Server error", status_code=500)

        with pytest.raises(APIError) as exc_info:
            await coordinator.dispatch(send, 'access-1')

        assert exc_info.value.status_code == 500
        assert renewer.calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_unauthorized_requests(self, coordinator, renewer):
        """Test many 401s at once cause exactly one renewal."""
        endpoint = Endpoint('access-2')
        tasks = [
            asyncio.create_task(coordinator.dispatch(endpoint.send, 'access-1'))
            for _ in range(4)
        ]
        await until(lambda: coordinator.waiter_count == 3)

        renewer.release.set()
        results = await asyncio.gather(*tasks)

        assert results == [{'ok': True}] * 4
        assert renewer.calls == 1
        assert endpoint.tokens.count('access-2') == 4
