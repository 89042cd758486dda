"""Authentication service orchestrating password hashing, lockout bookkeeping and token issuance."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable
import uuid

from email_validator import EmailNotValidError, validate_email

from .account import Account, Role
from .contracts import CredentialStore
from .errors import AccountLocked, AccountNotFound, InvalidCredentials, StorageError, ValidationError
from .lockout import LockoutPolicy, LockoutState
from ..security.passwords import PasswordHasher
from ..security.tokens import Token, TokenClaims, TokenIssuer

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Strip and lower-case ``email``, raising ``ValidationError`` when it is malformed."""
    candidate = (email or "").strip().lower()
    try:
        result = validate_email(candidate, check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError("invalid email address") from exc
    return result.normalized


class AuthService:
    """Registration and login workflows over a ``CredentialStore``."""

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        policy: LockoutPolicy,
        issuer: TokenIssuer,
        *,
        password_min_length: int = 12,
        max_update_retries: int = 32,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Store collaborators; every one of them is shared by concurrent requests."""
        self._store = store
        self._hasher = hasher
        self._policy = policy
        self._issuer = issuer
        self._password_min_length = password_min_length
        self._max_update_retries = max_update_retries
        self._clock = clock

    def register(self, email: str, plaintext: str, role: Role = Role.user) -> str:
        """Create an account and return its identifier.

        Raises ``ValidationError`` for a malformed email or short password and
        ``DuplicateAccount`` when the email is already registered.
        """
        normalized = normalize_email(email)
        if len(plaintext or "") < self._password_min_length:
            raise ValidationError(
                f"password must be at least {self._password_min_length} characters"
            )
        account = Account(
            account_id=str(uuid.uuid4()),
            email=normalized,
            password_hash=self._hasher.hash(plaintext),
            created_at=self._clock(),
            role=Role(role),
        )
        account_id = self._store.insert(account)
        logger.info("account registered account_id=%s role=%s", account_id, account.role.value)
        return account_id

    def login(self, email: str, plaintext: str) -> Token:
        """Verify credentials, apply the lockout policy and return a bearer token.

        Unknown emails and wrong passwords both raise ``InvalidCredentials``;
        a locked account raises ``AccountLocked`` without verifying the password.
        Lockout changes are written with the store's compare-and-update and
        re-evaluated against fresh state when a concurrent attempt wins.
        """
        try:
            normalized = normalize_email(email)
            account = self._store.find_by_email(normalized)
        except ValidationError:
            account = None
        if account is None:
            self._hasher.dummy_verify(plaintext or "")
            raise InvalidCredentials()

        verified: bool | None = None
        for _ in range(self._max_update_retries):
            now = self._clock()
            current = self._policy.refresh(account.lockout, now)
            if self._policy.is_locked(current, now):
                logger.debug("login refused, account locked account_id=%s", account.account_id)
                raise AccountLocked(current.locked_until)

            if verified is None:
                verified = self._hasher.verify(plaintext or "", account.password_hash)
            if verified:
                updated = self._policy.on_success(current)
            else:
                updated = self._policy.on_failure(current, now)

            if self._persist_lockout(account, updated):
                break
            account = self._reload(account)
        else:
            raise StorageError("lockout update kept conflicting")

        if not verified:
            if updated.locked_until is not None:
                logger.info(
                    "account locked after %d failed attempts account_id=%s",
                    updated.failed_attempts,
                    account.account_id,
                )
            raise InvalidCredentials()
        return self._issuer.issue(account.account_id, account.role)

    def authenticate(self, token: str) -> TokenClaims:
        """Verify a bearer token, raising ``TokenExpired`` or ``TokenInvalid``."""
        return self._issuer.verify(token)

    def _persist_lockout(self, account: Account, updated: LockoutState) -> bool:
        if updated == account.lockout:
            return True
        return self._store.update_lockout_fields(account.account_id, account.lockout, updated)

    def _reload(self, account: Account) -> Account:
        fresh = self._store.find_by_email(account.email)
        if fresh is None or fresh.account_id != account.account_id:
            raise AccountNotFound(f"account {account.account_id} disappeared during login")
        return fresh
