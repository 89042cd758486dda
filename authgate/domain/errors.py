"""Exception taxonomy shared by the authentication core and its HTTP surface."""

from __future__ import annotations

from datetime import datetime


class AuthGateError(Exception):
    """Base class for every error raised by the service."""


class ValidationError(AuthGateError):
    """Malformed input the caller can correct."""


class DuplicateAccount(ValidationError):
    """Registration conflicted with an existing account email."""

    def __init__(self, message: str = "account already exists") -> None:
        super().__init__(message)


class InvalidCredentials(AuthGateError):
    """Unknown email or wrong password; the two cases are deliberately indistinguishable."""

    def __init__(self, message: str = "invalid credentials") -> None:
        super().__init__(message)


class AccountLocked(AuthGateError):
    """Too many failed logins; rejected until ``locked_until``."""

    def __init__(self, locked_until: datetime) -> None:
        super().__init__(f"account locked until {locked_until.isoformat()}")
        self.locked_until = locked_until


class HashingError(AuthGateError):
    """The password hashing backend failed for reasons unrelated to the input."""


class TokenInvalid(AuthGateError):
    """Bearer token has a bad signature, format or issuer."""


class TokenExpired(TokenInvalid):
    """Bearer token was valid but its expiry has passed."""


class StorageError(AuthGateError):
    """A credential store operation failed."""


class StorageUnreachable(StorageError):
    """The credential store could not be reached within its timeout."""


class AccountNotFound(StorageError):
    """An update targeted an account row that no longer exists."""


class ShuttingDown(AuthGateError):
    """The worker is draining and no longer accepts new requests."""
