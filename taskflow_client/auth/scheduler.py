"""
Timers for the TaskFlow session client.

Provides a re-armable one-shot timer on top of asyncio tasks and the
proactive scheduler that renews credentials shortly before they expire.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Callable, Awaitable, Set

from taskflow_shared.models import CredentialPair

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = 300


class OneShotTimer:
    """
    Runs a coroutine callback once after a delay.

    ``arm`` always cancels the previous task first, so at most one timer for
    a given concern is live. While its callback runs the timer is already
    detached, so the callback may re-arm or cancel it freely; only
    ``shutdown`` stops a callback that is already running.
    """

    def __init__(self, name: str, callback: Callable[[], Awaitable[None]]):
        self.name = name
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._running: Set[asyncio.Task] = set()
        self._delay: Optional[float] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def running(self) -> bool:
        """True while a fired callback has not yet finished."""
        return bool(self._running)

    @property
    def delay(self) -> Optional[float]:
        """Delay the live timer was armed with, or None."""
        return self._delay if self.active else None

    def arm(self, delay: float) -> None:
        self.cancel()
        self._delay = max(0.0, delay)
        self._task = asyncio.create_task(self._run(self._delay), name=f"timer:{self.name}")
        logger.debug(f"{self.name} timer armed for {self._delay:.0f}s")

    async def _run(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.debug(f"{self.name} timer cancelled")
            raise

        current = asyncio.current_task()
        if self._task is current:
            self._task = None
            self._delay = None
        self._running.add(current)
        try:
            await self._callback()
        except Exception as e:
            logger.error(f"Error in {self.name} timer callback: {e}")
        finally:
            self._running.discard(current)

    def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        self._delay = None

    async def shutdown(self) -> None:
        """Cancel the pending timer and any running callback, and wait for both."""
        tasks = [self._task, *self._running]
        self.cancel()
        current = asyncio.current_task()

        for task in tasks:
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class ProactiveScheduler:
    """
    Renews credentials ``refresh_margin`` seconds before they expire.

    The renew callback is the same single-flight path used for 401 recovery,
    so a scheduled renewal and a request-triggered one never both run.
    """

    def __init__(
        self,
        refresh_margin: float,
        renew_callback: Callable[[], Awaitable[None]],
        clock: Callable[[], datetime] = datetime.now
    ):
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._timer = OneShotTimer("proactive-refresh", renew_callback)

    @property
    def timer(self) -> OneShotTimer:
        return self._timer

    def compute_delay(self, expires_at: datetime) -> float:
        """Seconds until renewal is due; zero or less means due now."""
        return (expires_at - self._clock()).total_seconds() - self.refresh_margin

    def is_due(self, credentials: CredentialPair) -> bool:
        return self.compute_delay(credentials.expires_at) <= 0

    def schedule(self, credentials: CredentialPair) -> float:
        """
        Arm the renewal timer for ``credentials``.

        Returns:
            The delay used; a non-positive delay fires on the next loop turn
        """
        delay = self.compute_delay(credentials.expires_at)
        if delay <= 0:
            logger.info("Credential renewal is already due, renewing immediately")
        else:
            logger.info(f"Next credential renewal in {delay:.0f}s")
        self._timer.arm(delay)
        return delay

    def cancel(self) -> None:
        self._timer.cancel()

    async def shutdown(self) -> None:
        await self._timer.shutdown()
