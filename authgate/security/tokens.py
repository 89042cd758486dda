"""Issuing and validating signed bearer tokens."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import secrets
from typing import Any, Callable

import jwt

from ..domain.account import Role
from ..domain.errors import TokenExpired, TokenInvalid

_ALGORITHM = "HS256"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Token:
    """Bearer token handed back to a client after a successful login."""

    access_token: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    token_type: str = "bearer"

    @property
    def expires_in(self) -> int:
        return int((self.expires_at - self.issued_at).total_seconds())


@dataclass(frozen=True, slots=True)
class TokenClaims:
    """Verified content of a bearer token."""

    account_id: str
    role: Role
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    """Mints and verifies stateless HS256 JWTs.

    Nothing is persisted: a token is valid exactly when its signature matches
    the process signing secret and its expiry has not passed.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "authgate",
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret
        self._issuer = issuer
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def issue(self, account_id: str, role: Role = Role.user) -> Token:
        """Create a signed token for ``account_id``.

        Parameters
        ----------
        account_id:
            Account identifier embedded in the ``sub`` claim.
        role:
            Role copied into the token so collaborators can authorise without a lookup.

        Returns
        -------
        Token
            The encoded JWT with its issuance and expiry times.
        """
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + self._ttl
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "sub": account_id,
            "role": Role(role).value,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": secrets.token_hex(8),
        }
        encoded = jwt.encode(payload, self._secret, algorithm=_ALGORITHM)
        return Token(
            access_token=encoded,
            account_id=account_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def verify(self, token: str) -> TokenClaims:
        """Decode and verify ``token``.

        Raises
        ------
        TokenExpired
            When the signature is valid but the expiry has passed.
        TokenInvalid
            For any other signature, format or issuer failure.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired("token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenInvalid("invalid token") from exc

        try:
            role = Role(claims.get("role", Role.user.value))
        except ValueError as exc:
            raise TokenInvalid("invalid token") from exc
        return TokenClaims(
            account_id=claims["sub"],
            role=role,
            issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )
