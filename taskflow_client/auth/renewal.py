"""
Single-flight credential renewal for the TaskFlow session client.

Every renewal in the process, whether triggered by a request that came back
401 or by the proactive scheduler, goes through one ``RenewalCoordinator``
so at most one renewal call is ever in flight.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Callable, Awaitable, TypeVar, Deque

from taskflow_shared.exceptions import APIError, RenewalError
from taskflow_shared.logging_config import mask_token
from taskflow_shared.models import CredentialPair

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class PendingRenewal:
    """State of the renewal currently in flight, if any."""
    in_flight: bool = False
    waiters: Deque[asyncio.Future] = field(default_factory=deque)


class RenewalCoordinator:
    """
    Collapses concurrent renewal requests into one call.

    The first caller of ``renew`` runs the renewal callback; everyone who
    arrives while it is running is queued and settled, in arrival order, with
    the same outcome. ``waiters`` is only ever non-empty while ``in_flight``.
    """

    def __init__(
        self,
        renew_callback: Callable[[], Awaitable[CredentialPair]],
        token_provider: Callable[[], Optional[str]]
    ):
        self._renew_callback = renew_callback
        self._token_provider = token_provider
        self._pending = PendingRenewal()
        self.renewal_count = 0

    @property
    def in_flight(self) -> bool:
        return self._pending.in_flight

    @property
    def waiter_count(self) -> int:
        return len(self._pending.waiters)

    async def renew(self) -> CredentialPair:
        """
        Renew credentials, or join the renewal already in progress.

        Returns:
            The newly issued credential pair

        Raises:
            RenewalError: The renewal failed; every waiter gets the same error.
                If the caller running the renewal is cancelled, waiters retry
                instead, the first of them taking over the renewal.
        """
        if self._pending.in_flight:
            waiter = asyncio.get_running_loop().create_future()
            self._pending.waiters.append(waiter)
            logger.debug(f"Renewal in flight, queued waiter #{len(self._pending.waiters)}")
            credentials = await waiter
            if credentials is None:
                # The owner was cancelled before an outcome; start over
                return await self.renew()
            return credentials

        self._pending.in_flight = True
        self.renewal_count += 1
        logger.debug("Starting credential renewal")

        try:
            credentials = await self._renew_callback()
        except asyncio.CancelledError:
            self._settle()
            raise
        except RenewalError as e:
            self._settle(error=e)
            raise
        except Exception as e:
            error = RenewalError(f"Credential renewal failed: {e}", cause=e)
            self._settle(error=error)
            raise error from e

        self._settle(credentials=credentials)
        return credentials

    def _settle(
        self,
        credentials: Optional[CredentialPair] = None,
        error: Optional[Exception] = None
    ) -> None:
        """
        Resolve every waiter in FIFO order, then release single-flight ownership.

        With neither credentials nor an error, waiters are woken with None
        and retry.
        """
        waiters = self._pending.waiters
        self._pending.waiters = deque()

        if waiters:
            if error is not None:
                outcome = "failure"
            else:
                outcome = "new credentials" if credentials is not None else "a retry"
            logger.debug(f"Settling {len(waiters)} renewal waiter(s) with {outcome}")

        while waiters:
            waiter = waiters.popleft()
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(credentials)

        self._pending.in_flight = False

    async def dispatch(
        self,
        send: Callable[[Optional[str]], Awaitable[T]],
        access_token: Optional[str],
        renewable: bool = True
    ) -> T:
        """
        Send a request, renewing and replaying it once on 401.

        Args:
            send: Coroutine function issuing the request with the given bearer
                token; raises ``APIError`` for non-success responses
            access_token: Token the first attempt is sent with; None when the
                held token is known to be expired
            renewable: False for requests that must never trigger renewal,
                such as requests made without a session

        Returns:
            Result of ``send``

        Raises:
            APIError: Non-401 failures, and a 401 on the replayed request
            RenewalError: The renewal needed for the replay failed
        """
        try:
            return await send(access_token)
        except APIError as e:
            if not (e.is_unauthorized and renewable):
                raise
            logger.info(f"Request unauthorized with token {mask_token(access_token)}, renewing")

        current_token = self._token_provider()
        if current_token and current_token != access_token and not self._pending.in_flight:
            # Someone else already renewed since this request was sent
            replay_token = current_token
        else:
            replay_token = (await self.renew()).access_token

        return await send(replay_token)
