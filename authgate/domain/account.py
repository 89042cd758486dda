from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .lockout import LockoutState


class Role(str, Enum):
    user = "user"
    admin = "admin"


@dataclass(slots=True)
class Account:
    """Aggregate root for a user's credentials and brute-force lockout state."""

    account_id: str
    email: str
    password_hash: str
    created_at: datetime
    role: Role = Role.user
    failed_attempts: int = 0
    locked_until: datetime | None = None

    @property
    def lockout(self) -> LockoutState:
        return LockoutState(self.failed_attempts, self.locked_until)
