"""
auditchain: FastAPI application factory.

Application lifecycle:
  startup  → configure logging, run DB migrations, seed key version 1
  shutdown → dispose DB engine pool

Run with ``auditchain-api`` or ``uvicorn --factory auditchain.main:create_app``.
"""

from __future__ import annotations

import asyncio

import sqlalchemy as sa
import structlog
import uvicorn
from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.api.v1.router import router as v1_router
from auditchain.config.logging_config import configure_logging
from auditchain.config.settings import Environment, Settings, get_settings
from auditchain.core.errors import AppError
from auditchain.core.middleware import (
    CorrelationIDMiddleware,
    SecurityHeadersMiddleware,
    app_error_handler,
    unhandled_exception_handler,
    validation_error_handler,
)
from auditchain.db.migrate import upgrade_to_head
from auditchain.db.session import dispose_engine
from auditchain.services.chain.secrets import SecretStore
from auditchain.services.chain.wiring import (
    ChainServices,
    bootstrap_secret,
    build_chain_services,
)

_log = structlog.get_logger(__name__)


async def _startup(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    configure_logging(
        log_level=settings.log_level.value,
        json_logs=settings.log_json,
        log_file=settings.log_file,
    )
    _log.info(
        "auditchain_starting",
        version=settings.app_version,
        environment=settings.environment.value,
    )

    if settings.run_migrations_on_startup:
        try:
            await asyncio.to_thread(upgrade_to_head, settings.database_url)
        except Exception:
            _log.exception("migrations_failed")
            raise

    version = await bootstrap_secret(app.state.chain, settings)
    if version is None and await app.state.chain.secret_store.latest_version() is None:
        _log.warning("audit_key_missing", hint="set AUDIT_SECRET or run auditchain rotate-key")
    _log.info("auditchain_ready", host=settings.host, port=settings.port)


async def _shutdown() -> None:
    await dispose_engine()
    _log.info("auditchain_shutdown")


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    secret_store: SecretStore | None = None,
) -> FastAPI:
    """
    Application factory. Returns a configured FastAPI instance.

    ``session_factory`` and ``secret_store`` are injection points for tests;
    by default the global engine and the database-backed key store are used.
    """
    settings = settings or get_settings()
    is_production = settings.environment == Environment.PRODUCTION

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Tamper-evident audit hash chain. Append-only entries linked by "
            "HMAC-SHA256, with verification, run history and compliance export."
        ),
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
        openapi_url=None if is_production else "/openapi.json",
    )
    app.state.settings = settings
    app.state.chain = build_chain_services(settings, session_factory, secret_store)

    # ── Startup / Shutdown ────────────────────────────────────────────── #
    @app.on_event("startup")
    async def on_startup() -> None:
        await _startup(app)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await _shutdown()

    # ── CORS ──────────────────────────────────────────────────────────── #
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"],
    )

    # ── Custom Middleware (applied in reverse order) ───────────────────── #
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationIDMiddleware)

    # ── Exception Handlers ────────────────────────────────────────────── #
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routes ────────────────────────────────────────────────────────── #
    app.include_router(v1_router)

    # ── Health ────────────────────────────────────────────────────────── #
    @app.get("/health", tags=["health"], summary="Health check")
    async def health() -> dict[str, object]:
        """Database reachability and whether an audit key is provisioned."""
        chain: ChainServices = app.state.chain

        db_ok = False
        try:
            async with chain.session_factory() as db:
                await db.execute(sa.text("SELECT 1"))
            db_ok = True
        except SQLAlchemyError:
            _log.warning("health_database_unavailable")

        key_version: int | None = None
        if db_ok:
            try:
                key_version = await chain.secret_store.latest_version()
            except AppError:
                _log.warning("health_key_lookup_failed")

        return {
            "status": "healthy" if (db_ok and key_version is not None) else "degraded",
            "database": "ok" if db_ok else "unavailable",
            "audit_key": "ok" if key_version is not None else "missing",
            "active_key_version": key_version,
            "version": settings.app_version,
        }

    # ── Metrics (Prometheus) ──────────────────────────────────────────── #
    @app.get("/metrics", tags=["observability"], summary="Prometheus metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "auditchain.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_config=None,
    )
