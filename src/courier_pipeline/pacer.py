"""
Courier Pipeline - Rate Pacer.

Fixed one-minute window counter in front of a vendor. When the budget
for the current window is spent, the caller is held until the window
ends; since the pacer runs on the consumption task, no polls happen
while it waits.
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

from courier_common.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_LIMIT = 600


@dataclass
class PacerState:
    """Counter for the current window; owned by one consumer."""

    count: int = 0
    window_start: float = 0.0
    window_end: float = 0.0

    def open_window(self, now: float, length: float) -> None:
        self.count = 0
        self.window_start = now
        self.window_end = now + length


class RatePacer:
    """Admits at most ``limit`` dispatches per window."""

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Clock | None = None,
        state: PacerState | None = None,
        name: str = "vendor",
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._window = window_seconds
        self._clock = clock or SystemClock()
        self._state = state or PacerState()
        self._name = name
        self.waits = 0

    @property
    def state(self) -> PacerState:
        return self._state

    @property
    def limit(self) -> int:
        return self._limit

    async def admit(self) -> None:
        """Count one dispatch, waiting for the next window if this one is full."""
        state = self._state
        now = self._clock.now()
        if state.count == 0:
            state.open_window(now, self._window)
        elif now > state.window_end:
            state.open_window(now, self._window)

        if state.count >= self._limit:
            delay = max(0.0, state.window_end - self._clock.now())
            self.waits += 1
            logger.info("rate_limit_reached", pacer=self._name, limit=self._limit,
                        wait_seconds=round(delay, 3))
            await self._clock.sleep(delay)
            state.open_window(self._clock.now(), self._window)

        state.count += 1

    async def pace(self, dispatch: Callable[[], Awaitable[T]]) -> T:
        """Admit, then run ``dispatch``; attempts count whether or not they succeed."""
        await self.admit()
        return await dispatch()
