"""
PharmaChain — FastAPI Application Entry Point
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from alembic.config import Config
from alembic import command as alembic_command
from apscheduler.schedulers.background import BackgroundScheduler

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.config import Settings
from api.errors import install_error_handlers
from api.routes import audit, auth, batches, health, stakeholders, verify
from api.services import Services, build_services
from common.errors import AppError

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

ALEMBIC_INI = os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini")


def run_migrations(database_url: str) -> None:
    alembic_cfg = Config(ALEMBIC_INI)
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    alembic_cfg.attributes["url_from_app"] = True
    alembic_cfg.attributes["configure_logger"] = False
    alembic_command.upgrade(alembic_cfg, "head")
    logger.info("Revocation store migrations applied successfully")


def purge_expired(services: Services) -> None:
    """Scheduled job: drop revocation entries and cached profiles past their TTL."""
    try:
        revoked = services.revocations.purge_expired()
    except AppError as e:
        logger.warning("Revocation purge skipped: %s", e.message)
        revoked = 0
    profiles = services.profiles.purge_expired()
    if revoked or profiles:
        logger.info("Purged %d revocation entries and %d cached profiles", revoked, profiles)


def start_scheduler(services: Services) -> BackgroundScheduler:
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        func=purge_expired,
        args=[services],
        trigger="interval",
        seconds=services.settings.cache_purge_interval_seconds,
        id="cache_purge",
        name="Revocation / profile cache purge",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started — purging caches every %ds", services.settings.cache_purge_interval_seconds)
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    settings = services.settings

    # ── Step 0: Revocation store schema ───────────────────────────────────────
    if settings.revocation_db_url:
        try:
            run_migrations(settings.revocation_db_url)
        except Exception as e:
            logger.error("Migration failed: %s", e)
            raise

    # ── Step 1: Connect the ledger gateway ────────────────────────────────────
    if not services.gateway.ready:
        try:
            services.gateway.start()
        except AppError as e:
            # stays not-ready; /api/health/ready reports 503 until restart
            logger.error("Ledger gateway failed to start: %s", e.message)

    # ── Step 2: Background purge job ──────────────────────────────────────────
    scheduler = start_scheduler(services)

    logger.info("PharmaChain API started (%s)", settings.app_env)
    yield

    logger.info("PharmaChain API shutting down")
    scheduler.shutdown(wait=False)
    services.gateway.close()
    if services.documents is not None:
        services.documents.close()


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    if services is None:
        settings = settings or Settings.from_env()
        services = build_services(settings)
    settings = services.settings
    logging.getLogger().setLevel(settings.log_level)

    app = FastAPI(
        title="PharmaChain API",
        description="Pharmaceutical supply-chain tracking and verification",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app, debug=settings.is_development)

    # Routers
    app.include_router(auth.router,         prefix="/api/auth",         tags=["Auth"])
    app.include_router(batches.router,      prefix="/api/batches",      tags=["Batches"])
    app.include_router(stakeholders.router, prefix="/api/stakeholders", tags=["Stakeholders"])
    app.include_router(verify.router,       prefix="/api/verify",       tags=["Verification"])
    app.include_router(health.router,       prefix="/api/health",       tags=["Health"])
    app.include_router(audit.router,        prefix="/api/audit",        tags=["Audit"])
    return app


app = create_app()
