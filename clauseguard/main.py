"""
ClauseGuard - FastAPI Application
Contract analysis with auditable decisions and deterministic fallback.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clauseguard.core.config import get_settings
from clauseguard.core.database import close_db, init_db
from clauseguard.core.errors import setup_exception_handlers
from clauseguard.core.logging_config import setup_logging
from clauseguard.routers import analysis
from clauseguard.services.granite_client import get_granite_client

logger = logging.getLogger(__name__)


# =============================================================================
# Lifespan (Startup/Shutdown)
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(
        level=settings.log_level,
        json_format=settings.log_json_format,
        log_file=Path(settings.log_file) if settings.log_file else None,
    )
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)

    await init_db()
    if not get_granite_client().is_configured:
        logger.warning("Granite API key not set, summaries will use the templated fallback")

    yield

    await get_granite_client().close()
    await close_db()
    logger.info("%s stopped", settings.app_name)


# =============================================================================
# App factory
# =============================================================================

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description=settings.app_description,
        version=settings.app_version,
        lifespan=lifespan,
    )

    setup_exception_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(analysis.router, prefix="/api/analysis", tags=["Analysis"])
    app.include_router(analysis.usage_router, prefix="/api/usage", tags=["Usage"])

    @app.get("/health", tags=["Health"])
    async def health():
        return {
            "status": "ok",
            "app": settings.app_name,
            "version": settings.app_version,
            "model_configured": get_granite_client().is_configured,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("clauseguard.main:app", host=settings.host, port=settings.port, reload=settings.debug)
