"""
SkuCast API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.deps import build_cache_store, build_scheduler
from core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("SkuCast API starting up", version=settings.app_version)
    cache_store = build_cache_store(settings)
    cache_store.init()
    app.state.cache_store = cache_store
    app.state.optimization_scheduler = build_scheduler(cache_store, settings)
    yield
    cache_store.flush()
    logger.info("SkuCast API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Per-SKU forecast parameter optimization",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import optimizations

app.include_router(optimizations.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
