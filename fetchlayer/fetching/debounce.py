"""Trailing-edge debounce for fetch triggers."""
import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger("fetching.debounce")


class Debouncer:
    """
    Collapses rapid triggers into one trailing call.

    Every trigger() restarts the quiet-period timer; the callback fires once
    the timer runs out. With a delay of 0 the callback runs synchronously on
    each trigger.
    """

    def __init__(self, delay: float, callback: Callable[[], None]):
        self._delay = delay
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self.collapsed = 0

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        """True while a trailing call is scheduled."""
        return self._handle is not None

    def trigger(self) -> None:
        if self._delay <= 0:
            self._callback()
            return

        if self._handle is not None:
            self._handle.cancel()
            self.collapsed += 1
            logger.debug(f"Debounced trigger collapsed (total {self.collapsed})")
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._callback()

    def cancel(self) -> None:
        """Drop any scheduled trailing call."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
