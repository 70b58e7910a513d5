import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.cache import CacheGateway, CacheStore, create_store
from app.config import settings
from app.database import dispose_engine
from app.dependencies import default_listing_cache_key
from app.errors import install_error_handlers
from app.middleware import SecurityHeadersMiddleware
from app.routers import articles, images, metrics
from app.services.image_service import ImageOptimizationService
from app.services.invalidation import InvalidationCoordinator
from app.storage import LocalStorage

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: the listing degrades to live queries if the store is down.
    await app.state.cache_gateway.store.connect()
    yield
    # Shutdown
    await app.state.cache_gateway.store.disconnect()
    await dispose_engine()


def create_app(
    cache_store: CacheStore | None = None,
    storage: LocalStorage | None = None,
) -> FastAPI:
    """
    Build the application and wire its collaborators once.

    Handlers reach the cache gateway, invalidation coordinator, storage and
    image service through ``app.state``; tests pass their own store and
    storage instead of patching globals.
    """
    logging.basicConfig(level=settings.LOG_LEVEL.upper())

    store = cache_store or create_store(settings.CACHE_DRIVER, settings.REDIS_URL)
    gateway = CacheGateway(
        store,
        tag=settings.LISTING_CACHE_TAG,
        default_key=default_listing_cache_key(),
        single_flight=settings.CACHE_SINGLE_FLIGHT,
    )
    storage = storage or LocalStorage(settings.STORAGE_ROOT, settings.STORAGE_URL)

    app = FastAPI(
        title="Content API",
        description="Articles, comments and image uploads with a cached article listing",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.APP_ENV == "production" else "/docs",
        redoc_url=None if settings.APP_ENV == "production" else "/redoc",
    )
    app.state.cache_gateway = gateway
    app.state.invalidation = InvalidationCoordinator(gateway)
    app.state.storage = storage
    app.state.image_service = ImageOptimizationService(storage)
    logger.info(
        "Listing cache: driver=%s tag_invalidation=%s",
        store.driver,
        gateway.supports_tags,
    )

    # Middleware
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag", "X-Debug-Response-Time"],
    )

    install_error_handlers(app)

    # Routers
    app.include_router(articles.router)
    app.include_router(images.router)
    app.include_router(metrics.router)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": "1.0.0"}

    return app


app = create_app()
