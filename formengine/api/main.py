"""
Main FastAPI application for the form evaluation engine.
"""

import logging

from fastapi import FastAPI

from formengine.api.middleware.error_handling import add_exception_handlers
from formengine.api.middleware.request_id import RequestIDMiddleware
from formengine.api.routers import evaluation, health
from formengine.core.config import EngineSettings, get_settings
from formengine.core.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(settings: EngineSettings = None) -> FastAPI:
    """Build the application with logging, middleware and routers."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Form Engine",
        description="Visibility, validation, completeness and row-flow evaluation for forms",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ========================================================================
    # MIDDLEWARE
    # ========================================================================

    app.add_middleware(RequestIDMiddleware)
    add_exception_handlers(app)

    # ========================================================================
    # ROUTERS
    # ========================================================================

    app.include_router(health.router)
    app.include_router(evaluation.router)

    logger.info(f"Form engine API ready (language={settings.default_language}, phase={settings.default_phase})")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("formengine.api.main:app", host="0.0.0.0", port=8000, reload=True)
