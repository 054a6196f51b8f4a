"""
Single-flight sync supervisor.

Debounces triggers into one trailing call and hands out a monotonic
sequence number for every request an action issues. A result may be
applied only while its sequence is still the latest issued
(last-issued-wins).

States:
    Idle       nothing pending
    Scheduled  a debounce timer is running
    InFlight   at least one issued call has not finished
    Cancelled  torn down; nothing further is issued or applied
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[Any]]


class SupervisorState(StrEnum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    IN_FLIGHT = "in_flight"
    CANCELLED = "cancelled"


class SyncSupervisor:
    """Debounce + sequence numbering for one form session."""

    def __init__(self, delay: float = 0.3):
        self.delay = delay
        self._sequence = 0
        self._timer: asyncio.Task[None] | None = None
        self._pending: Action | None = None
        self._in_flight: set[asyncio.Task[Any]] = set()
        self._cancelled = False

    @property
    def state(self) -> SupervisorState:
        if self._cancelled:
            return SupervisorState.CANCELLED
        if self._timer is not None:
            return SupervisorState.SCHEDULED
        if self._in_flight:
            return SupervisorState.IN_FLIGHT
        return SupervisorState.IDLE

    @property
    def sequence(self) -> int:
        """Sequence number of the latest issued call (0 before the first)."""
        return self._sequence

    @property
    def alive(self) -> bool:
        return not self._cancelled

    def next_sequence(self) -> int:
        """Number a request about to be issued; older numbers become stale."""
        self._sequence += 1
        logger.debug("Issuing sync request #%d", self._sequence)
        return self._sequence

    def is_current(self, sequence: int) -> bool:
        return not self._cancelled and sequence == self._sequence

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, action: Action) -> None:
        """(Re)start the debounce window; only the trailing action fires."""
        if self._cancelled:
            return
        self._pending = action
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._wait_then_fire())

    async def _wait_then_fire(self) -> None:
        await asyncio.sleep(self.delay)
        self._timer = None
        self._issue()

    def _issue(self) -> asyncio.Task[Any] | None:
        action, self._pending = self._pending, None
        if action is None or self._cancelled:
            return None
        task = asyncio.get_running_loop().create_task(action())
        self._in_flight.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Sync call failed unexpectedly: %s", error, exc_info=error)

    async def fire_now(self, action: Action) -> Any:
        """Issue ``action`` immediately, dropping any pending debounce."""
        self._cancel_timer()
        if self._cancelled:
            return None
        self._pending = action
        task = self._issue()
        return await task if task is not None else None

    async def flush(self) -> None:
        """Fire a pending debounced call now and wait for everything in flight."""
        if self._timer is not None:
            self._cancel_timer()
            self._issue()
        await self.drain()

    async def drain(self) -> None:
        """Wait for the pending timer and every in-flight call to finish."""
        while self._timer is not None or self._in_flight:
            waiting = [task for task in (self._timer, *self._in_flight) if task is not None]
            await asyncio.gather(*waiting, return_exceptions=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cancel(self) -> None:
        """Tear down: stop the timer, abort in-flight calls, refuse new ones."""
        self._cancelled = True
        self._pending = None
        self._cancel_timer()
        for task in list(self._in_flight):
            task.cancel()
        logger.debug("Sync supervisor cancelled at sequence %d", self._sequence)
