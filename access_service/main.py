"""FastAPI application wiring for the access service."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import get_settings
from .domain.authenticator import DualCredentialAuthenticator
from .domain.invites import InviteLedger
from .domain.service import AccountService
from .domain.sweeper import ExpirySweeper
from .domain.sync import UserSynchronizer
from .gateway.client import MediaServerGateway
from .repository import AccountRepository, InviteRepository, ProfileRepository, init_schema
from .scheduler import MaintenanceScheduler
from .security.backends import build_rate_limiter, build_session_store
from .security.passwords import BcryptPasswordHasher

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, media server client, services, scheduler)."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    init_schema(pool)

    gateway = MediaServerGateway(
        settings.media_server_url,
        settings.media_server_api_key,
        timeout_seconds=settings.media_server_timeout_seconds,
        client_name=settings.media_server_client_name,
        device_id=settings.media_server_device_id,
        version=settings.version,
    )
    hasher = BcryptPasswordHasher(rounds=settings.bcrypt_rounds)
    accounts = AccountRepository(pool)
    profiles = ProfileRepository(pool)

    sweeper = ExpirySweeper(accounts, gateway)
    ledger = InviteLedger(
        InviteRepository(pool),
        accounts,
        profiles,
        gateway,
        hasher,
        default_ttl_days=settings.invite_default_ttl_days,
        password_min_length=settings.password_min_length,
    )
    app.state.pool = pool
    app.state.invite_ledger = ledger
    app.state.rate_limiter = build_rate_limiter(settings)
    app.state.account_service = AccountService(
        accounts,
        profiles,
        gateway,
        DualCredentialAuthenticator(accounts, gateway, hasher),
        UserSynchronizer(accounts, gateway, hasher, handle_attempts=settings.sync_handle_attempts),
        sweeper,
        build_session_store(settings),
        session_ttl_seconds=settings.session_ttl_seconds,
    )

    scheduler = None
    if settings.expiry_sweep_enabled:
        scheduler = MaintenanceScheduler(
            sweeper, ledger, interval_seconds=settings.expiry_sweep_interval_seconds
        )
        scheduler.start()
    else:
        logger.info("expiry sweep scheduler disabled by configuration")

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()
        gateway.close()
        pool.close()
        pool.wait_close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for the admin and signup frontends in dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


app.include_router(v1_router)


# Prometheus metrics endpoint for Prometheus scrapes
try:
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
except ImportError:  # pragma: no cover - metrics are optional in dev
    logger.info("prometheus_client not installed; /metrics disabled")


def run() -> None:
    """Serve the API with uvicorn on the configured host and port."""
    import uvicorn

    uvicorn.run(app, host=settings.http_host, port=settings.http_port)
