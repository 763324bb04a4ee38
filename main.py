import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cms_kernel.config import settings
from cms_kernel.database import init_models
from cms_kernel.exception_handlers import register_exception_handlers
from cms_kernel.extensions.core_version import CORE_VERSION
from cms_kernel.middleware.logging import StructuredLoggingMiddleware, configure_logging
from cms_kernel.routes import analytics, communications, cron, plugins, themes, webcallbacks, webhooks
from cms_kernel.scheduler import shutdown_scheduler, start_scheduler

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Tasks to run at application startup and shutdown."""
    logger.info("Starting up the extension kernel (core %s)...", CORE_VERSION)
    await init_models()
    start_scheduler()
    yield
    logger.info("Shutting down the extension kernel...")
    shutdown_scheduler()


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Plugin and theme runtime for a multi-tenant CMS",
        debug=settings.debug,
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(StructuredLoggingMiddleware)
    register_exception_handlers(app)

    for module in (plugins, themes, analytics, webcallbacks, cron, communications, webhooks):
        app.include_router(module.router, prefix="/api/v1")
    app.include_router(themes.assets_router)

    @app.get("/", tags=["Root"])
    async def root():
        return {"message": "CMS extension kernel", "core_version": CORE_VERSION}

    if settings.debug:
        logger.info("Running in %s mode", settings.environment)
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
