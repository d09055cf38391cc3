"""
Main FastAPI application
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from integration_gateway.api import ehr
from integration_gateway.core.config import Settings, settings
from integration_gateway.core.logging import configure_logging, get_logger
from integration_gateway.core.request_id import RequestIDMiddleware
from integration_gateway.integrations.ehr import EHRIntegrationService

logger = get_logger(__name__)


def create_app(
    app_settings: Optional[Settings] = None,
    service: Optional[EHRIntegrationService] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        app_settings: Settings to use (defaults to the environment)
        service: Pre-built integration service (tests inject one with fake collaborators)
    """
    app_settings = app_settings or settings
    configure_logging(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        integration_service = service or EHRIntegrationService.build(app_settings)
        await integration_service.start()
        app.state.ehr_service = integration_service
        logger.info(
            "application_startup",
            app_name=app_settings.APP_NAME,
            environment=app_settings.ENVIRONMENT,
            partners=integration_service.registry.partner_ids(),
        )
        try:
            yield
        finally:
            await integration_service.close()
            logger.info("application_shutdown")

    app = FastAPI(
        title=app_settings.APP_NAME,
        version=app_settings.APP_VERSION,
        debug=app_settings.DEBUG,
        lifespan=lifespan,
    )
    app.add_middleware(RequestIDMiddleware)
    ehr.register_exception_handlers(app)
    app.include_router(ehr.router)

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        return {"status": "healthy", "version": app_settings.APP_VERSION}

    return app
