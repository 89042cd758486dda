"""
Worker supervisor for the multi-worker process topology.

Provides:
- Fan-out of one worker process per slot
- Immediate respawn of workers that exit without being asked to
- Signal forwarding and no-respawn shutdown

Respawn is unconditional: there is no backoff and no crash-loop ceiling, so a
worker that fails on startup is restarted forever.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import multiprocessing
from multiprocessing.connection import wait
from multiprocessing.context import BaseContext
from multiprocessing.process import BaseProcess
import os
import signal
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _worker_main(target: Callable[..., Any], args: tuple) -> None:
    # forked workers inherit the supervisor's handlers
    for sig in FORWARDED_SIGNALS:
        signal.signal(sig, signal.SIG_DFL)
    target(*args)


class WorkerStatus(str, Enum):
    starting = "starting"
    running = "running"
    exited = "exited"


@dataclass(slots=True)
class WorkerHandle:
    """Supervisor-owned view of one worker process."""

    slot: int
    process: BaseProcess
    status: WorkerStatus = WorkerStatus.starting
    exit_code: Optional[int] = None
    restarts: int = 0

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid


class WorkerSupervisor:
    """
    Keeps ``worker_count`` worker processes alive until told to stop.

    The supervisor serves no requests; it only starts processes, watches
    their exit and relays termination signals.
    """

    def __init__(
        self,
        target: Callable[..., Any],
        worker_count: int,
        *,
        args: tuple = (),
        context: Optional[BaseContext] = None,
        poll_interval: float = 1.0,
        shutdown_grace: Optional[float] = None,
    ):
        """
        Initialize the supervisor.

        Args:
            target: Worker entry point; must be picklable under the chosen context.
            worker_count: Number of worker slots to keep filled.
            args: Positional arguments passed to every worker.
            context: multiprocessing context, ``spawn`` by default.
            poll_interval: Upper bound on how long the run loop waits between reaps.
            shutdown_grace: Seconds after a shutdown request before stragglers are killed.
        """
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self._target = target
        self._args = args
        self._worker_count = worker_count
        self._ctx = context or multiprocessing.get_context("spawn")
        self._poll_interval = poll_interval
        self._shutdown_grace = shutdown_grace
        self._workers: dict[int, WorkerHandle] = {}
        self._stopping = False
        self._stop_requested_at: Optional[float] = None
        self._stop_signal: Optional[int] = None

    @property
    def workers(self) -> list[WorkerHandle]:
        return [self._workers[slot] for slot in sorted(self._workers)]

    @property
    def stopping(self) -> bool:
        return self._stopping

    def all_exited(self) -> bool:
        return all(handle.status is WorkerStatus.exited for handle in self._workers.values())

    def start(self) -> None:
        """Start one worker per slot."""
        logger.info("supervisor pid=%d starting %d worker(s)", os.getpid(), self._worker_count)
        for slot in range(self._worker_count):
            if self._stopping:
                break
            self._spawn(slot)

    def reap(self) -> list[WorkerHandle]:
        """
        Refresh worker statuses and replace workers that died unexpectedly.

        Returns:
            Handles of the replacement workers started by this call.
        """
        replacements: list[WorkerHandle] = []
        for slot, handle in list(self._workers.items()):
            if handle.status is WorkerStatus.exited:
                continue
            if handle.process.is_alive():
                if handle.status is WorkerStatus.starting:
                    handle.status = WorkerStatus.running
                continue

            handle.process.join()
            handle.status = WorkerStatus.exited
            handle.exit_code = handle.process.exitcode
            if self._stopping:
                logger.info(
                    "worker %d pid=%s exited with code %s during shutdown",
                    slot, handle.pid, handle.exit_code,
                )
                continue

            logger.error(
                "worker %d pid=%s exited unexpectedly with code %s, respawning (restart #%d)",
                slot, handle.pid, handle.exit_code, handle.restarts + 1,
            )
            replacements.append(self._spawn(slot, restarts=handle.restarts + 1))
        return replacements

    def request_shutdown(self, signum: int = signal.SIGTERM) -> None:
        """Stop respawning and forward ``signum`` to every live worker."""
        if not self._stopping:
            self._stopping = True
            self._stop_requested_at = time.monotonic()
            logger.info("supervisor stopping workers with %s", signal.Signals(signum).name)
        self._stop_signal = signum
        for handle in list(self._workers.values()):
            self._signal(handle, signum)

    def run(self) -> int:
        """Start workers and supervise them until shutdown completes."""
        previous = {sig: signal.signal(sig, self._on_signal) for sig in FORWARDED_SIGNALS}
        try:
            self.start()
            while not (self._stopping and self.all_exited()):
                sentinels = [
                    handle.process.sentinel
                    for handle in self._workers.values()
                    if handle.status is not WorkerStatus.exited
                ]
                if sentinels:
                    wait(sentinels, timeout=self._poll_interval)
                else:
                    time.sleep(self._poll_interval)
                self.reap()
                self._kill_stragglers()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
        logger.info("supervisor pid=%d exiting, all workers stopped", os.getpid())
        return 0

    def _on_signal(self, signum: int, frame: Any) -> None:
        # a terminal Ctrl-C already reached the workers through the process group;
        # a second SIGINT would make uvicorn skip the drain
        self.request_shutdown(signal.SIGTERM if signum == signal.SIGINT else signum)

    def _kill_stragglers(self) -> None:
        if not self._stopping or self._shutdown_grace is None or self._stop_requested_at is None:
            return
        if time.monotonic() - self._stop_requested_at < self._shutdown_grace:
            return
        for handle in self._workers.values():
            if handle.status is not WorkerStatus.exited and handle.process.is_alive():
                logger.warning("worker %d pid=%s ignored shutdown, killing", handle.slot, handle.pid)
                handle.process.kill()

    def _spawn(self, slot: int, restarts: int = 0) -> WorkerHandle:
        process = self._ctx.Process(
            target=_worker_main,
            args=(self._target, self._args),
            name=f"authgate-worker-{slot}",
        )
        process.start()
        handle = WorkerHandle(slot=slot, process=process, restarts=restarts)
        self._workers[slot] = handle
        logger.info("worker %d started pid=%s", slot, process.pid)
        if self._stop_signal is not None:
            # shutdown was requested while this worker was starting
            self._signal(handle, self._stop_signal)
        return handle

    def _signal(self, handle: WorkerHandle, signum: int) -> None:
        if handle.status is WorkerStatus.exited or handle.pid is None:
            return
        try:
            os.kill(handle.pid, signum)
        except ProcessLookupError:
            logger.debug("worker %d pid=%s already gone", handle.slot, handle.pid)
