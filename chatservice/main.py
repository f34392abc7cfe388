from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from chatservice.api.router import api_router
from chatservice.api.routers.health import router as health_router
from chatservice.core.logging import configure_logging
from chatservice.core.settings import get_settings
from chatservice.dependency_injection import build_container
from chatservice.services.chat_store import PostgresChatStore
from chatservice.services.contracts import ChatStoreProtocol, DatabaseServiceProtocol

settings = get_settings()
configure_logging(settings.effective_log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("starting chat service", extra={"app_env": settings.app_env})

    container = build_container(settings)
    database_service = container.resolve(DatabaseServiceProtocol)
    await database_service.connect()
    logger.info("database connection pool initialized")

    store = container.resolve(ChatStoreProtocol)
    if isinstance(store, PostgresChatStore):
        await store.ensure_schema()

    app.state.settings = settings
    app.state.container = container

    try:
        yield
    finally:
        await database_service.disconnect()
        logger.info("chat service shutdown complete")


app = FastAPI(
    title="Chat Service",
    version="0.1.0",
    docs_url="/docs" if settings.enable_swagger else None,
    redoc_url="/redoc" if settings.enable_swagger else None,
    openapi_url="/openapi.json" if settings.enable_swagger else None,
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(api_router, prefix="/api")
