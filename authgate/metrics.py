"""Prometheus counters for authentication outcomes."""

from __future__ import annotations

from prometheus_client import Counter

REGISTRATIONS = Counter(
    "authgate_registrations_total",
    "Account registration attempts by outcome.",
    ["outcome"],
)

LOGIN_ATTEMPTS = Counter(
    "authgate_login_attempts_total",
    "Login attempts by outcome.",
    ["outcome"],
)
