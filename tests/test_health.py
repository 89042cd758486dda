from __future__ import annotations

import json
import threading
import time

import pytest

from authgate.health import HealthMonitor


@pytest.fixture
def monitor(store):
    monitor = HealthMonitor(store, probe_timeout=0.2)
    yield monitor
    if store.hang is not None:
        store.hang.set()
    monitor.close()


def test_reachable_storage_reports_ok(monitor):
    snapshot = monitor.snapshot()

    assert snapshot.overall_status == "ok"
    assert snapshot.storage_reachable is True
    assert snapshot.uptime_seconds >= 0
    assert snapshot.memory_usage.rss_bytes > 0


def test_unreachable_storage_reports_degraded(monitor, store):
    store.unreachable = True

    snapshot = monitor.snapshot()

    assert snapshot.overall_status == "degraded"
    assert snapshot.storage_reachable is False
    assert snapshot.memory_usage.rss_bytes > 0


def test_hanging_probe_is_bounded_by_timeout(monitor, store):
    store.hang = threading.Event()

    started = time.monotonic()
    snapshot = monitor.snapshot()
    elapsed = time.monotonic() - started

    assert snapshot.overall_status == "degraded"
    assert elapsed < 1.0


def test_outstanding_probe_is_not_stacked(monitor, store):
    store.hang = threading.Event()
    monitor.snapshot()

    started = time.monotonic()
    snapshot = monitor.snapshot()

    assert snapshot.storage_reachable is False
    assert time.monotonic() - started < 0.1


def test_recovers_once_probe_returns(monitor, store):
    store.hang = threading.Event()
    assert not monitor.snapshot().storage_reachable

    store.hang.set()
    time.sleep(0.05)

    assert monitor.snapshot().ok


def test_snapshot_serialises(monitor):
    data = monitor.snapshot().to_dict()

    assert set(data) == {
        "overall_status",
        "storage_reachable",
        "uptime_seconds",
        "memory_usage",
        "pid",
        "checked_at",
    }
    json.dumps(data)
