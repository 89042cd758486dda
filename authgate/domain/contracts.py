"""Domain-level contracts shared by multiple layers."""

from __future__ import annotations

from typing import Protocol

from .account import Account
from .lockout import LockoutState


class CredentialStore(Protocol):
    """Narrow persistence contract the authentication core needs.

    Every call must be bounded by a timeout. ``update_lockout_fields`` is a
    compare-and-update: it writes ``new`` only when the stored lockout fields
    still equal ``expected`` and returns ``False`` when a concurrent writer
    got there first.
    """

    def find_by_email(self, email: str) -> Account | None:
        ...

    def insert(self, account: Account) -> str:
        """Persist a new account, raising ``DuplicateAccount`` on an email conflict."""
        ...

    def update_lockout_fields(
        self, account_id: str, expected: LockoutState, new: LockoutState
    ) -> bool:
        """Swap lockout fields atomically, raising ``AccountNotFound`` for a missing row."""
        ...

    def ping(self) -> None:
        """Raise ``StorageUnreachable`` when the store cannot answer a trivial query."""
        ...

    def close(self) -> None:
        ...
