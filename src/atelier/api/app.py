"""FastAPI application factory.

The api layer validates inputs, starts pipeline runs and batch jobs and
returns their payloads. Image work happens in the pipeline and batch layers.
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from atelier import __version__
from atelier.api.state import Services, build_services
from atelier.config import Settings
from atelier.logging_setup import configure_logging


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Create FastAPI application.

    Args:
        settings: Settings; read from the environment when omitted.
        services: Pre-built services (tests); built from settings when omitted.

    Returns:
        Configured FastAPI application.
    """
    if services is not None:
        settings = services.settings
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Atelier API",
        description="Garment recolor pipeline and multi-view batch generation",
        version=__version__,
    )
    app.state.services = services or build_services(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from atelier.api.routes import batch, pipeline

    app.include_router(pipeline.router, prefix="/api/v1")
    app.include_router(batch.router, prefix="/api/v1")

    store_root = app.state.services.store.root
    if store_root is not None:
        app.mount("/artifacts", StaticFiles(directory=str(store_root)), name="artifacts")

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {
            "status": "ok",
            "backend": settings.backend,
            "pipeline": app.state.services.pipeline is not None,
        }

    return app
