"""
Graceful shutdown coordination for the admission pipeline.
"""

import asyncio
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from shared.errors import ShuttingDownError
from shared.logging import get_logger


class ShutdownState(Enum):
    """Coordinator states. Transitions only move forward."""
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class ShutdownCoordinator:
    """Tracks in-flight requests and refuses new ones once draining.

    Requests admitted before :meth:`begin_drain` keep running; the
    coordinator stops when the last one leaves or when the drain timeout
    elapses, whichever comes first.
    """

    def __init__(self, drain_timeout_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        if drain_timeout_seconds <= 0:
            raise ValueError("drain_timeout_seconds must be positive")
        self.drain_timeout_seconds = drain_timeout_seconds
        self.clock = clock
        self.logger = get_logger("admission.shutdown")

        # Re-entrant: begin_drain may run from a signal handler on the same thread.
        self._lock = threading.RLock()
        self._state = ShutdownState.RUNNING
        self._in_flight = 0
        self._drain_started_at: Optional[float] = None
        self._listeners: List[Callable[[int], None]] = []

    @property
    def state(self) -> ShutdownState:
        with self._lock:
            self._advance()
            return self._state

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def on_change(self, listener: Callable[[int], None]) -> None:
        """Register a callback receiving the in-flight count on every change."""
        self._listeners.append(listener)

    def try_enter(self) -> bool:
        """Admit a new request if the service is running."""
        with self._lock:
            self._advance()
            if self._state is not ShutdownState.RUNNING:
                return False
            self._in_flight += 1
            count = self._in_flight
        self._notify(count)
        return True

    def leave(self) -> None:
        """Mark an admitted request as finished."""
        with self._lock:
            if self._in_flight > 0:
                self._in_flight -= 1
            self._advance()
            count = self._in_flight
        self._notify(count)

    @contextmanager
    def track(self) -> Iterator[None]:
        """Hold an in-flight slot for the duration of the block."""
        if not self.try_enter():
            raise ShuttingDownError()
        try:
            yield
        finally:
            self.leave()

    def begin_drain(self) -> bool:
        """Move from RUNNING to DRAINING. Returns False if already past it."""
        with self._lock:
            if self._state is not ShutdownState.RUNNING:
                return False
            self._state = ShutdownState.DRAINING
            self._drain_started_at = self.clock()
            in_flight = self._in_flight
            self._advance()

        self.logger.info(
            "Drain started",
            in_flight=in_flight,
            drain_timeout_seconds=self.drain_timeout_seconds,
        )
        return True

    async def wait_for_drain(self, poll_interval: float = 0.05) -> ShutdownState:
        """Wait until the coordinator reaches STOPPED.

        Starts the drain if nobody has yet. Returns promptly once in-flight
        work finishes and never waits past the drain timeout.
        """
        self.begin_drain()
        while self.state is not ShutdownState.STOPPED:
            await asyncio.sleep(poll_interval)
        return ShutdownState.STOPPED

    def describe(self) -> Dict[str, Any]:
        with self._lock:
            self._advance()
            return {
                "state": self._state.value,
                "in_flight": self._in_flight,
                "drain_timeout_seconds": self.drain_timeout_seconds,
            }

    def _advance(self) -> None:
        # Caller holds _lock.
        if self._state is not ShutdownState.DRAINING:
            return

        if self._in_flight == 0:
            self._state = ShutdownState.STOPPED
            self.logger.info("Drain complete")
            return

        if self.clock() - self._drain_started_at >= self.drain_timeout_seconds:
            self._state = ShutdownState.STOPPED
            self.logger.warning(
                "Drain timeout elapsed, abandoning in-flight requests",
                in_flight=self._in_flight,
            )

    def _notify(self, count: int) -> None:
        for listener in self._listeners:
            listener(count)
