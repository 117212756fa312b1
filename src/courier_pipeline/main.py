"""
Courier Pipeline - Ingress FastAPI Application.

Accepts notification requests over HTTP and hands them to the tier
streams. Delivery runs in the separate ``courier-worker`` processes.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
import structlog

from courier_common.logging import configure_logging

from .bootstrap import PipelineResources, build_ingress
from .ingress import NotificationIngress
from .settings import Environment, ServiceSettings

logger = structlog.get_logger(__name__)

_resources: PipelineResources | None = None
_ingress: NotificationIngress | None = None


def get_ingress() -> NotificationIngress:
    """Get the global ingress instance."""
    if _ingress is None:
        raise RuntimeError("Notification ingress not initialized")
    return _ingress


def get_resources() -> PipelineResources | None:
    return _resources


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global _resources, _ingress

    settings: ServiceSettings = app.state.settings
    configure_logging(settings.log_level, settings.env.value)
    logger.info("courier_ingress_starting", service=settings.name, env=settings.env.value,
                use_mock=settings.use_mock)

    _resources = await PipelineResources(settings).open()
    _ingress = build_ingress(_resources)
    logger.info("courier_ingress_ready")

    yield

    await _resources.close()
    _ingress = None
    _resources = None
    logger.info("courier_ingress_shutdown")


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or ServiceSettings()
    production = settings.env == Environment.PRODUCTION

    app = FastAPI(
        title="Courier Notification Ingress",
        description="Accepts email, SMS and push notifications for prioritized delivery",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None if production else "/docs",
        redoc_url=None if production else "/redoc",
    )
    app.state.settings = settings

    from .api import router as notification_router
    app.include_router(notification_router)

    @app.get("/", tags=["health"])
    async def root():
        """Service information endpoint."""
        return {
            "service": settings.name,
            "version": "0.1.0",
            "status": "running",
            "environment": settings.env.value,
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point for ``courier-ingress``."""
    import uvicorn

    settings = ServiceSettings()
    uvicorn.run(
        "courier_pipeline.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
