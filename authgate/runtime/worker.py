"""Entry point of a single request-serving worker process."""

from __future__ import annotations

import logging
import math
import socket
from typing import Any, Optional

import uvicorn

from ..config import Settings
from ..logging_config import configure_logging
from ..main import create_app
from .shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)


class DrainingServer(uvicorn.Server):
    """uvicorn server that hands termination signals to a ``ShutdownCoordinator``."""

    def __init__(self, config: uvicorn.Config, coordinator: ShutdownCoordinator) -> None:
        super().__init__(config)
        self._coordinator = coordinator
        coordinator.bind(stop_accepting=self._stop_accepting)

    def _stop_accepting(self) -> None:
        # uvicorn closes its listeners and waits on open connections once this is set
        self.should_exit = True

    def handle_exit(self, sig: int, frame: Any) -> None:
        # uvicorn must see the signal first: a SIGINT arriving with should_exit
        # already set is taken as a second Ctrl-C and forces an undrained exit
        super().handle_exit(sig, frame)
        self._coordinator.handle_signal(sig)


def uvicorn_config(settings: Settings, app: Any) -> uvicorn.Config:
    return uvicorn.Config(
        app,
        host=settings.http_host,
        port=settings.http_port,
        lifespan="on",
        log_config=None,
        timeout_graceful_shutdown=math.ceil(settings.drain_timeout_seconds),
    )


def bind_socket(settings: Settings) -> socket.socket:
    """Bind the listening socket in the supervisor so every worker can share it."""
    return uvicorn_config(settings, app=None).bind_socket()


def run_worker(settings: Settings, sock: Optional[socket.socket] = None) -> None:
    """Serve the application until a termination signal has been drained."""
    configure_logging(settings.log_level)
    coordinator = ShutdownCoordinator(drain_timeout=settings.drain_timeout_seconds)
    app = create_app(settings, shutdown=coordinator)
    server = DrainingServer(uvicorn_config(settings, app), coordinator)
    logger.info("worker serving on %s:%d", settings.http_host, settings.http_port)
    server.run(sockets=[sock] if sock is not None else None)
