"""
Test Configuration — Fixtures for async DB, test client, cache store and sample data.

Uses per-test transactions with SAVEPOINT/rollback so each test gets a
clean database state; app code is free to commit and to open its own
SAVEPOINTs.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_cache_store, get_db, get_scheduler
from api.main import app
from db.models import OptimizationJob
from db.session import Base
from ml.fingerprint import fingerprint
from ml.model_registry import get_model
from ml.observations import ObservationPoint
from optimization.cache import OptimizationCacheStore
from optimization.jobs import DispatchedJob
from optimization.scheduler import OptimizationScheduler
from optimization.storage import MemoryKeyValueStore

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed clock so expiry tests are deterministic (2026-01-01T00:00:00Z)
NOW = 1767225600.0


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDispatcher:
    """Hands out sequential job ids and keeps the jobs in memory."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.jobs: dict[int, OptimizationJob] = {}
        self.payloads = []
        self.fail = False
        self._next_id = 1

    async def dispatch(self, item, payload):
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("broker unavailable")
        job_id = self._next_id
        self._next_id += 1
        self.payloads.append(payload)
        self.jobs[job_id] = OptimizationJob(
            id=job_id,
            sku=item.sku,
            model_id=item.model_id,
            method=item.method,
            status="pending",
            data_hash=payload.data_hash,
            payload=payload.model_dump(mode="json"),
        )
        return DispatchedJob(job_id=job_id, sku=item.sku, model_id=item.model_id, method=item.method, created=True)

    async def fetch(self, job_ids):
        return [self.jobs[job_id] for job_id in job_ids if job_id in self.jobs]

    def finish(self, job_id, status="completed", window=2):
        job = self.jobs[job_id]
        job.status = status
        job.updated_at = datetime.fromtimestamp(self.clock.now, tz=timezone.utc).replace(tzinfo=None)
        if status == "completed":
            job.result = {"parameters": {"window": window}, "accuracy": 91.0, "confidence": 70.0}
        elif status == "failed":
            job.error = "optimizer crashed"
        return job


@pytest.fixture
async def test_engine():
    """In-memory database with all tables; one per test so each test owns its event loop."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Create a test session wrapped in a transaction that rolls back after each test."""
    async with test_engine.connect() as conn:
        trans = await conn.begin()
        # commits inside app code release a SAVEPOINT instead of ending our transaction
        session = AsyncSession(bind=conn, expire_on_commit=False, join_transaction_mode="create_savepoint")

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture
def session_factory(test_engine):
    """Committing session factory for code that opens its own sessions."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


@pytest.fixture
def cache(kv_store, clock):
    store = OptimizationCacheStore(kv_store, scope="test", clock=clock)
    store.init()
    return store


@pytest.fixture
def dispatcher(clock):
    return FakeDispatcher(clock)


@pytest.fixture
def optimization_scheduler(cache, dispatcher):
    return OptimizationScheduler(cache, dispatcher, models=[get_model("moving_average")])


@pytest.fixture
async def client(test_db, cache, optimization_scheduler):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache_store] = lambda: cache
    app.dependency_overrides[get_scheduler] = lambda: optimization_scheduler

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


def _make_points(sku: str, values: list[float], start_month: int = 1) -> list[ObservationPoint]:
    """Monthly observations starting in January 2024."""
    points = []
    for idx, value in enumerate(values):
        month_index = start_month - 1 + idx
        year = 2024 + month_index // 12
        month = month_index % 12 + 1
        points.append(ObservationPoint(sku=sku, date=f"{year:04d}-{month:02d}-01", value=float(value)))
    return points


@pytest.fixture
def make_points():
    return _make_points


@pytest.fixture
def sample_points():
    """Two SKUs with 24 months each plus one SKU too short to optimize."""
    seasonal = [10, 12, 15, 20, 26, 30, 32, 30, 24, 18, 13, 11]
    return (
        _make_points("SKU-A", seasonal + [v + 2 for v in seasonal])
        + _make_points("SKU-B", [50 + idx for idx in range(24)])
        + _make_points("SKU-C", [5, 6])
    )


@pytest.fixture
def sku_a_hash(sample_points):
    return fingerprint(sample_points, sku="SKU-A")
