"""HTTP route definitions for registration, login and session introspection."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from ..domain.errors import (
    AccountLocked,
    HashingError,
    InvalidCredentials,
    StorageError,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from ..domain.service import AuthService, normalize_email
from ..metrics import LOGIN_ATTEMPTS, REGISTRATIONS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

bearer_scheme = HTTPBearer(auto_error=False)

_UNAUTHORIZED_HEADERS = {"WWW-Authenticate": "Bearer"}


class CredentialsRequest(BaseModel):
    """Email/password pair accepted by registration and login."""

    email: str
    password: str


class RegisterResponse(BaseModel):
    """Confirmation returned once an account has been persisted."""

    account_id: str
    email: str
    message: str = "account registered"


class TokenResponse(BaseModel):
    """Bearer token issued after a successful login."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class SessionResponse(BaseModel):
    """Claims carried by a verified bearer token."""

    account_id: str
    role: str
    issued_at: str
    expires_at: str


def get_service(request: Request) -> AuthService:
    """Resolve the `AuthService` stored on the FastAPI application state."""
    service: AuthService = request.app.state.auth_service
    return service


@router.post("/accounts", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
def register_account(
    payload: CredentialsRequest,
    service: AuthService = Depends(get_service),
) -> RegisterResponse:
    """Register an account for the given email and password."""
    try:
        account_id = service.register(payload.email, payload.password)
    except ValidationError as exc:
        REGISTRATIONS.labels(outcome="rejected").inc()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (HashingError, StorageError) as exc:
        REGISTRATIONS.labels(outcome="error").inc()
        logger.exception("registration failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="registration failed"
        ) from exc
    REGISTRATIONS.labels(outcome="created").inc()
    return RegisterResponse(account_id=account_id, email=normalize_email(payload.email))


@router.post("/login", response_model=TokenResponse)
def login(
    payload: CredentialsRequest,
    service: AuthService = Depends(get_service),
) -> TokenResponse:
    """Exchange valid credentials for a bearer token.

    Wrong credentials and a locked account produce the same 401 response.
    """
    try:
        token = service.login(payload.email, payload.password)
    except (InvalidCredentials, AccountLocked) as exc:
        outcome = "locked" if isinstance(exc, AccountLocked) else "invalid"
        LOGIN_ATTEMPTS.labels(outcome=outcome).inc()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid credentials",
            headers=_UNAUTHORIZED_HEADERS,
        ) from exc
    except (HashingError, StorageError) as exc:
        LOGIN_ATTEMPTS.labels(outcome="error").inc()
        logger.exception("login failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="login failed"
        ) from exc
    LOGIN_ATTEMPTS.labels(outcome="success").inc()
    return TokenResponse(access_token=token.access_token, expires_in=token.expires_in)


@router.get("/session", response_model=SessionResponse)
def read_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    service: AuthService = Depends(get_service),
) -> SessionResponse:
    """Return the claims of the presented bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid token",
            headers=_UNAUTHORIZED_HEADERS,
        )
    try:
        claims = service.authenticate(credentials.credentials)
    except TokenExpired as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="token expired", headers=_UNAUTHORIZED_HEADERS
        ) from exc
    except TokenInvalid as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token", headers=_UNAUTHORIZED_HEADERS
        ) from exc
    return SessionResponse(
        account_id=claims.account_id,
        role=claims.role.value,
        issued_at=claims.issued_at.isoformat(),
        expires_at=claims.expires_at.isoformat(),
    )
