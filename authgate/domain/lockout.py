"""Brute-force lockout bookkeeping.

An account is *open* while its failure counter is below the threshold and
*locked* while ``locked_until`` lies in the future. The policy only computes
transitions; persisting them atomically is the caller's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True, slots=True)
class LockoutState:
    """Snapshot of the lockout fields stored on an account."""

    failed_attempts: int = 0
    locked_until: datetime | None = None


OPEN = LockoutState()


class LockoutPolicy:
    """Failed-attempt threshold with a fixed lock window."""

    def __init__(self, threshold: int = 5, lock_window: timedelta = timedelta(minutes=15)) -> None:
        if threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        self.threshold = threshold
        self.lock_window = lock_window

    def is_locked(self, state: LockoutState, now: datetime) -> bool:
        return state.locked_until is not None and now < state.locked_until

    def refresh(self, state: LockoutState, now: datetime) -> LockoutState:
        """Return the state as seen at ``now``, reopening an account whose lock has expired."""
        if state.locked_until is not None and now >= state.locked_until:
            return OPEN
        return state

    def on_failure(self, state: LockoutState, now: datetime) -> LockoutState:
        """Count a failed verification, locking the account when the threshold is reached."""
        if self.is_locked(state, now):
            # counter stays frozen until the lock expires
            return state
        attempts = state.failed_attempts + 1
        if attempts >= self.threshold:
            return LockoutState(attempts, now + self.lock_window)
        return LockoutState(attempts, None)

    def on_success(self, state: LockoutState) -> LockoutState:
        return OPEN
