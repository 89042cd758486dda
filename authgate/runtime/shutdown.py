"""Per-worker graceful shutdown: stop accepting, drain in-flight requests, close storage."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
import logging
import signal
import time
from typing import AsyncIterator, Callable

from ..domain.errors import ShuttingDown

logger = logging.getLogger(__name__)


class ShutdownPhase(str, Enum):
    serving = "serving"
    draining = "draining"
    closed = "closed"


class ShutdownCoordinator:
    """Drain-and-close state machine driven by termination signals.

    ``serving -> draining -> closed``. Once draining, ``track`` refuses new
    requests. ``drain`` waits for in-flight requests until the deadline set
    when draining began, then closes storage whether or not they finished.
    """

    def __init__(
        self,
        *,
        drain_timeout: float = 30.0,
        close_storage: Callable[[], None] | None = None,
        stop_accepting: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._drain_timeout = drain_timeout
        self._close_storage = close_storage
        self._stop_accepting = stop_accepting
        self._clock = clock
        self._phase = ShutdownPhase.serving
        self._in_flight = 0
        self._abandoned = 0
        self._deadline: float | None = None
        self._idle: asyncio.Event | None = None

    @property
    def phase(self) -> ShutdownPhase:
        return self._phase

    @property
    def accepting(self) -> bool:
        return self._phase is ShutdownPhase.serving

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def abandoned(self) -> int:
        """Requests cancelled by the server after draining began."""
        return self._abandoned

    def bind(
        self,
        *,
        close_storage: Callable[[], None] | None = None,
        stop_accepting: Callable[[], None] | None = None,
    ) -> None:
        """Attach hooks that only exist once the server and storage are built."""
        if close_storage is not None:
            self._close_storage = close_storage
        if stop_accepting is not None:
            self._stop_accepting = stop_accepting

    @asynccontextmanager
    async def track(self) -> AsyncIterator[None]:
        """Count one request as in flight, refusing it when the worker is draining."""
        if not self.accepting:
            raise ShuttingDown("worker is shutting down")
        self._in_flight += 1
        try:
            yield
        except asyncio.CancelledError:
            # the hosting server cancels requests that outlive its graceful timeout
            if not self.accepting:
                self._abandoned += 1
            raise
        finally:
            self._in_flight -= 1
            if self._in_flight == 0 and self._idle is not None:
                self._idle.set()

    def handle_signal(self, signum: int) -> None:
        """Entry point for SIGINT/SIGTERM delivery."""
        self.begin_drain(reason=signal.Signals(signum).name)

    def begin_drain(self, reason: str = "requested") -> None:
        """Stop accepting new work; repeated calls keep the original deadline."""
        if self._phase is not ShutdownPhase.serving:
            return
        self._phase = ShutdownPhase.draining
        self._deadline = self._clock() + self._drain_timeout
        logger.info(
            "draining (%s): %d request(s) in flight, timeout %.1fs",
            reason,
            self._in_flight,
            self._drain_timeout,
        )
        if self._stop_accepting is not None:
            self._stop_accepting()

    async def drain(self) -> bool:
        """Wait for in-flight requests up to the deadline, then close storage.

        Returns ``True`` when every request finished in time. Requests still
        running at the deadline, or cancelled by the server while draining, are
        abandoned and their count logged.
        """
        if self._phase is ShutdownPhase.closed:
            return True
        self.begin_drain(reason="drain")

        timed_out = False
        if self._in_flight:
            self._idle = asyncio.Event()
            remaining = max(0.0, self._deadline - self._clock())
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                timed_out = True
        abandoned = self._abandoned + (self._in_flight if timed_out else 0)
        clean = abandoned == 0
        if not clean:
            logger.warning(
                "drain incomplete, force closing with %d request(s) abandoned",
                abandoned,
            )

        try:
            if self._close_storage is not None:
                self._close_storage()
        except Exception:
            logger.exception("closing storage failed during shutdown")
            raise
        finally:
            self._phase = ShutdownPhase.closed
            logger.info("worker closed (clean=%s)", clean)
        return clean
