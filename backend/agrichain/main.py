"""
FastAPI application entry point.
Configures middleware, routers, and lifecycle events.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from agrichain.core.config import get_settings
from agrichain.core.logging import configure_logging, get_logger
from agrichain.db.session import close_db, init_db, ping_db
from agrichain.modules.ledger.router import router as ledger_router
from agrichain.modules.ledger.service import LedgerAnchorService
from agrichain.modules.provenance.attachments import AttachmentStorage
from agrichain.modules.provenance.router import router as provenance_router

configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Opens the database pool and builds the process-wide ledger service and
    attachment storage; both are released again at shutdown.
    """
    settings = get_settings()
    logger.info(
        "starting_application",
        environment=settings.environment,
        version=settings.version,
        network=settings.ledger_network_name,
    )

    await init_db()
    logger.info("database_initialized")

    app.state.ledger_service = LedgerAnchorService.from_settings(settings)
    app.state.attachment_storage = AttachmentStorage(settings.upload_dir)

    yield

    await app.state.ledger_service.close()
    await close_db()
    logger.info("application_shutdown_complete")


def create_application() -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application with middleware,
    routers, and settings applied.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=f"{settings.api_v1_prefix}/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Origin", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, object]:
        checks: dict[str, str] = {}

        try:
            checks["db"] = "ok" if await ping_db() else "unavailable"
        except Exception:
            logger.warning("health_db_unavailable", exc_info=True)
            checks["db"] = "unavailable"

        ledger: LedgerAnchorService | None = getattr(app.state, "ledger_service", None)
        checks["ledger"] = "ok" if ledger is not None and await ledger.is_reachable() else "unavailable"

        overall = "healthy" if all(v == "ok" for v in checks.values()) else "degraded"
        return {"status": overall, "version": settings.version, "checks": checks}

    app.include_router(
        provenance_router,
        prefix=f"{settings.api_v1_prefix}/provenance",
        tags=["Provenance"],
    )
    app.include_router(
        ledger_router,
        prefix=f"{settings.api_v1_prefix}/ledger",
        tags=["Ledger"],
    )

    return app


app = create_application()
