import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from gateway import __version__
from gateway.api.responses import register_exception_handlers
from gateway.api.routers import files as files_router
from gateway.api.routers import health as health_router
from gateway.core.config import Settings, get_settings
from gateway.services.storage import StorageService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    if app.state.storage is None:
        app.state.storage = StorageService.from_settings(settings)

    # Failures here abort startup.
    await app.state.storage.ensure_bucket()
    logger.info(
        "Storage service initialized (endpoint: %s, bucket: %s)",
        settings.endpoint_url,
        settings.minio_bucket,
    )
    yield
    logger.info("Storage gateway shutting down")


def create_app(
    settings: Settings | None = None,
    storage: StorageService | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="Storage Gateway API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.storage = storage

    register_exception_handlers(app)
    app.include_router(files_router.router)
    app.include_router(health_router.router)

    return app
