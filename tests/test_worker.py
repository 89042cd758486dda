"""Tests for the uvicorn worker; these serve the app on an ephemeral local port."""

from __future__ import annotations

import dataclasses
import signal
import threading
import time

import httpx
import pytest

from authgate.main import create_app
from authgate.runtime.shutdown import ShutdownCoordinator, ShutdownPhase
from authgate.runtime.worker import DrainingServer, bind_socket, uvicorn_config


def wait_until(condition, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


@pytest.fixture
def local_settings(settings):
    return dataclasses.replace(settings, http_host="127.0.0.1", http_port=0, drain_timeout_seconds=5.0)


@pytest.mark.parametrize("sig", [signal.SIGINT, signal.SIGTERM])
def test_first_signal_starts_graceful_drain(local_settings, store, sig):
    coordinator = ShutdownCoordinator(drain_timeout=local_settings.drain_timeout_seconds)
    server = DrainingServer(uvicorn_config(local_settings, create_app(local_settings, store=store)), coordinator)

    server.handle_exit(sig, None)

    assert server.should_exit
    assert not server.force_exit
    assert coordinator.phase is ShutdownPhase.draining


def test_second_interrupt_forces_exit(local_settings, store):
    coordinator = ShutdownCoordinator(drain_timeout=local_settings.drain_timeout_seconds)
    server = DrainingServer(uvicorn_config(local_settings, create_app(local_settings, store=store)), coordinator)

    server.handle_exit(signal.SIGINT, None)
    server.handle_exit(signal.SIGINT, None)

    assert server.force_exit


@pytest.mark.parametrize("sig", [signal.SIGINT, signal.SIGTERM])
def test_signal_drains_in_flight_request(local_settings, store, sig):
    coordinator = ShutdownCoordinator(drain_timeout=local_settings.drain_timeout_seconds)
    app = create_app(local_settings, store=store, shutdown=coordinator)
    release = threading.Event()

    @app.get("/slow")
    def slow() -> dict:
        release.wait(timeout=5)
        return {"finished": True}

    sock = bind_socket(local_settings)
    port = sock.getsockname()[1]
    base_url = f"http://127.0.0.1:{port}"
    server = DrainingServer(uvicorn_config(local_settings, app), coordinator)
    # off the main thread uvicorn installs no signal handlers and re-raises nothing on exit
    server_thread = threading.Thread(target=server.run, kwargs={"sockets": [sock]}, daemon=True)
    server_thread.start()

    responses: list[httpx.Response] = []
    client_thread = None
    try:
        wait_until(lambda: server.started)
        client_thread = threading.Thread(
            target=lambda: responses.append(httpx.get(f"{base_url}/slow", timeout=10))
        )
        client_thread.start()
        wait_until(lambda: coordinator.in_flight == 1)

        server.handle_exit(sig, None)

        try:
            refused = httpx.get(f"{base_url}/healthz", timeout=2).status_code == 503
        except httpx.TransportError:
            refused = True
        assert refused
    finally:
        release.set()
        if client_thread is not None:
            client_thread.join(timeout=10)
        server_thread.join(timeout=10)

    assert not server_thread.is_alive()
    assert not server.force_exit
    assert [response.status_code for response in responses] == [200]
    assert responses[0].json() == {"finished": True}
    assert store.closed
    assert coordinator.phase is ShutdownPhase.closed
