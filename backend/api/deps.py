"""
SkuCast API Dependencies

Dependency injection for DB sessions, the optimization cache store and the
optimization scheduler. The store and scheduler are built once in the app
lifespan and live on ``app.state``.
"""

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings
from db.session import AsyncSessionLocal
from optimization.cache import OptimizationCacheStore
from optimization.jobs import SqlJobDispatcher
from optimization.scheduler import OptimizationScheduler
from optimization.storage import build_key_value_store


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def build_cache_store(settings: Settings) -> OptimizationCacheStore:
    """A cache store over the configured backend; call ``init()`` before use."""
    return OptimizationCacheStore(
        build_key_value_store(settings),
        scope=settings.optimization_cache_scope,
        storage_key=settings.optimization_cache_key,
        expiry_hours=settings.optimization_cache_expiry_hours,
    )


def build_scheduler(cache: OptimizationCacheStore, settings: Settings) -> OptimizationScheduler:
    dispatcher = SqlJobDispatcher(AsyncSessionLocal, task_name=settings.optimization_task_name)
    return OptimizationScheduler(
        cache,
        dispatcher,
        ai_enabled=settings.ai_optimization_enabled,
        ai_failure_threshold=settings.ai_failure_threshold,
        min_observations=settings.optimization_min_observations,
        seasonal_period=settings.default_seasonal_period,
        validation_ratio=settings.optimization_validation_ratio,
    )


def get_cache_store(request: Request) -> OptimizationCacheStore:
    return request.app.state.cache_store


def get_scheduler(request: Request) -> OptimizationScheduler:
    return request.app.state.optimization_scheduler
