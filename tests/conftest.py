from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from authgate.config import Settings
from authgate.domain.account import Account
from authgate.domain.errors import AccountNotFound, DuplicateAccount, StorageUnreachable
from authgate.domain.lockout import LockoutPolicy, LockoutState
from authgate.domain.service import AuthService
from authgate.main import create_app
from authgate.security.passwords import PasswordHasher
from authgate.security.tokens import TokenIssuer

TEST_SECRET = "test-signing-secret-0123456789abcdef0123456789abcdef"


class InMemoryCredentialStore:
    """Thread-safe credential store mimicking the Postgres compare-and-update semantics."""

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._ids_by_email: dict[str, str] = {}
        self._lock = threading.Lock()
        self.updates = 0
        self.conflicts = 0
        self.unreachable = False
        self.hang: threading.Event | None = None
        self.closed = False

    def find_by_email(self, email: str) -> Account | None:
        with self._lock:
            account_id = self._ids_by_email.get(email)
            if account_id is None:
                return None
            return dataclasses.replace(self._accounts[account_id])

    def insert(self, account: Account) -> str:
        with self._lock:
            if account.email in self._ids_by_email:
                raise DuplicateAccount()
            self._accounts[account.account_id] = dataclasses.replace(account)
            self._ids_by_email[account.email] = account.account_id
        return account.account_id

    def update_lockout_fields(
        self, account_id: str, expected: LockoutState, new: LockoutState
    ) -> bool:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            if account.lockout != expected:
                self.conflicts += 1
                return False
            account.failed_attempts = new.failed_attempts
            account.locked_until = new.locked_until
            self.updates += 1
            return True

    def ping(self) -> None:
        if self.hang is not None:
            self.hang.wait()
        if self.unreachable:
            raise StorageUnreachable("connection refused")

    def close(self) -> None:
        self.closed = True

    def get(self, email: str) -> Account:
        account = self.find_by_email(email)
        assert account is not None
        return account


class FakeClock:
    """Settable UTC clock used to step through lock windows."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def policy() -> LockoutPolicy:
    return LockoutPolicy(threshold=5, lock_window=timedelta(minutes=15))


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer(TEST_SECRET, issuer="authgate-test", ttl_seconds=3600)


@pytest.fixture
def service(store, hasher, policy, issuer, clock) -> AuthService:
    return AuthService(store, hasher, policy, issuer, clock=clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        jwt_secret=TEST_SECRET,
        jwt_issuer="authgate-test",
        bcrypt_rounds=4,
        lockout_threshold=5,
        lockout_window_seconds=900,
        health_probe_timeout_seconds=0.2,
        drain_timeout_seconds=1.0,
    )


@pytest.fixture
def api_client(settings, store):
    """Provide a FastAPI test client backed by the in-memory store."""
    app = create_app(settings, store=store)
    with TestClient(app) as client:
        yield client
