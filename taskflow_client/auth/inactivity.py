"""
Inactivity monitor for the TaskFlow session client.
"""

import logging
from datetime import datetime
from typing import Callable, Awaitable

from taskflow_client.auth.scheduler import OneShotTimer

logger = logging.getLogger(__name__)

DEFAULT_INACTIVITY_WINDOW = 1800


class InactivityMonitor:
    """Ends the session after ``window`` seconds with no user activity."""

    def __init__(
        self,
        window: float,
        on_timeout: Callable[[], Awaitable[None]],
        clock: Callable[[], datetime] = datetime.now
    ):
        self.window = window
        self._clock = clock
        self._timer = OneShotTimer("inactivity", on_timeout)

    @property
    def timer(self) -> OneShotTimer:
        return self._timer

    def restart(self) -> None:
        """Arm the full window from now."""
        self._timer.arm(self.window)

    def remaining(self, last_activity: datetime) -> float:
        return self.window - (self._clock() - last_activity).total_seconds()

    def has_elapsed(self, last_activity: datetime) -> bool:
        return self.remaining(last_activity) <= 0

    def resume(self, last_activity: datetime) -> None:
        """Arm whatever is left of the window after ``last_activity``."""
        remaining = self.remaining(last_activity)
        logger.debug(f"Resuming inactivity window with {remaining:.0f}s left")
        self._timer.arm(remaining)

    def cancel(self) -> None:
        self._timer.cancel()

    async def shutdown(self) -> None:
        await self._timer.shutdown()
