"""FastAPI application wiring for one authgate worker."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
import logging
import os

from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .api.routes import router as v1_router
from .config import Settings, get_settings, resolve_signing_secret
from .domain.contracts import CredentialStore
from .domain.lockout import LockoutPolicy
from .domain.service import AuthService
from .health import HealthMonitor
from .repository import AccountRepository, create_pool
from .runtime.shutdown import ShutdownCoordinator
from .security.passwords import PasswordHasher
from .security.tokens import TokenIssuer

logger = logging.getLogger(__name__)


def build_auth_service(settings: Settings, store: CredentialStore) -> AuthService:
    """Assemble the authentication core; the signing secret is resolved here, once per process."""
    return AuthService(
        store,
        PasswordHasher(rounds=settings.bcrypt_rounds),
        LockoutPolicy(
            threshold=settings.lockout_threshold,
            lock_window=timedelta(seconds=settings.lockout_window_seconds),
        ),
        TokenIssuer(
            resolve_signing_secret(settings),
            issuer=settings.jwt_issuer,
            ttl_seconds=settings.jwt_ttl_seconds,
        ),
        password_min_length=settings.password_min_length,
    )


def _open_repository(settings: Settings) -> AccountRepository:
    pool = create_pool(settings.database_url, timeout=settings.storage_timeout_seconds)
    # a database that is down at boot shows up as degraded health, not a crash loop
    pool.open(wait=False)
    return AccountRepository(pool, timeout=settings.storage_timeout_seconds)


def create_app(
    settings: Settings | None = None,
    *,
    store: CredentialStore | None = None,
    shutdown: ShutdownCoordinator | None = None,
) -> FastAPI:
    """Build the worker application.

    ``store`` replaces the Postgres repository (tests pass an in-memory one);
    ``shutdown`` lets the server that hosts the app share its coordinator.
    """
    settings = settings or get_settings()
    coordinator = shutdown or ShutdownCoordinator(drain_timeout=settings.drain_timeout_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialise the credential store and services, drain and close them on shutdown."""
        credential_store = store if store is not None else _open_repository(settings)
        coordinator.bind(close_storage=credential_store.close)
        health = HealthMonitor(credential_store, probe_timeout=settings.health_probe_timeout_seconds)
        app.state.auth_service = build_auth_service(settings, credential_store)
        app.state.health = health
        logger.info("worker pid=%d ready", os.getpid())
        try:
            yield
        finally:
            await coordinator.drain()
            health.close()

    app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)
    app.state.shutdown = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        max_age=600,
    )

    @app.middleware("http")
    async def track_in_flight(request: Request, call_next):
        """Refuse new requests once draining, count the rest as in flight."""
        if not coordinator.accepting:
            return JSONResponse(
                {"detail": "shutting down"},
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                headers={"Connection": "close"},
            )
        async with coordinator.track():
            return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"detail": "invalid request", "errors": jsonable_encoder(exc.errors())},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.get("/healthz", tags=["health"])
    def healthz(request: Request) -> JSONResponse:
        """Return the worker health snapshot; 503 when storage is unreachable."""
        snapshot = request.app.state.health.snapshot()
        return JSONResponse(
            snapshot.to_dict(),
            status_code=status.HTTP_200_OK if snapshot.ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    @app.get("/metrics", tags=["health"])
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(v1_router)
    return app
