import asyncio
import sqlite3
from types import SimpleNamespace

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from db.session import Base
from optimization.jobs import build_payload, create_or_coalesce_job, decode_result, get_job
from workers.optimization import process_job, run_optimization_job, run_search

RAMP = [float(v) for v in range(1, 21)]


def _payload(data_hash, method="grid", history=RAMP):
    return build_payload(method, sku="SKU-A", model_id="moving_average", data_hash=data_hash, history=history)


class TestRunSearch:
    def test_grid(self, sku_a_hash):
        result = run_search(_payload(sku_a_hash))
        assert result.parameters == {"window": 2}
        assert result.confidence is None
        assert result.training_size == 16
        assert result.validation_size == 4

    def test_heuristic(self, sku_a_hash):
        result = run_search(_payload(sku_a_hash, method="ai"))
        assert result.parameters == {"window": 2}
        assert 5.0 <= result.confidence <= 95.0
        assert result.reasoning


class TestProcessJob:
    async def test_completes_pending_job(self, test_db, sku_a_hash):
        job, _ = await create_or_coalesce_job(test_db, _payload(sku_a_hash))
        summary = await process_job(test_db, job.id)

        assert summary["status"] == "completed"
        assert summary["parameters"] == {"window": 2}
        stored = await get_job(test_db, job.id)
        assert stored.status == "completed"
        assert stored.progress == 100
        assert stored.attempts == 1
        assert decode_result("moving_average", stored.result).expected_accuracy == stored.result["accuracy"]

    async def test_search_that_cannot_run_fails_the_job(self, test_db, sku_a_hash):
        job, _ = await create_or_coalesce_job(test_db, _payload(sku_a_hash, history=[5.0]))
        summary = await process_job(test_db, job.id)

        assert summary["status"] == "failed"
        stored = await get_job(test_db, job.id)
        assert stored.status == "failed"
        assert "Insufficient data" in stored.error

    async def test_corrupt_payload_fails_the_job(self, test_db, sku_a_hash):
        job, _ = await create_or_coalesce_job(test_db, _payload(sku_a_hash))
        job.payload = {"method": "bayesian", "sku": "SKU-A"}
        await test_db.commit()

        summary = await process_job(test_db, job.id)
        assert summary["status"] == "failed"
        assert (await get_job(test_db, job.id)).status == "failed"

    async def test_only_pending_jobs_run(self, test_db, sku_a_hash):
        job, _ = await create_or_coalesce_job(test_db, _payload(sku_a_hash))
        await process_job(test_db, job.id)

        again = await process_job(test_db, job.id)
        assert again == {"status": "skipped", "reason": "job_completed", "job_id": job.id}
        assert (await process_job(test_db, 9999))["reason"] == "not_found"

    async def test_retry_resumes_running_job(self, test_db, sku_a_hash):
        job, _ = await create_or_coalesce_job(test_db, _payload(sku_a_hash))
        job.status = "running"
        job.attempts = 1
        await test_db.commit()

        assert (await process_job(test_db, job.id))["status"] == "skipped"
        resumed = await process_job(test_db, job.id, resume=True)
        assert resumed["status"] == "completed"
        assert (await get_job(test_db, job.id)).attempts == 2


def test_celery_task_runs_job_end_to_end(tmp_path, monkeypatch, sku_a_hash):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"
    engine = create_async_engine(db_url, echo=False, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _seed() -> int:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as db:
            job, _ = await create_or_coalesce_job(db, _payload(sku_a_hash), reason="csv_upload")
            await db.commit()
            return job.id

    job_id = asyncio.run(_seed())
    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(database_url=db_url))

    result = run_optimization_job.run(job_id=job_id)
    assert result["status"] == "completed"
    assert result["job_id"] == job_id

    async def _load():
        async with session_factory() as db:
            return await get_job(db, job_id)

    assert asyncio.run(_load()).status == "completed"
    asyncio.run(engine.dispose())


async def test_job_cancelled_during_search_stays_cancelled(tmp_path, monkeypatch, sku_a_hash):
    db_path = tmp_path / "jobs.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", echo=False, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with session_factory() as db:
        job, _ = await create_or_coalesce_job(db, _payload(sku_a_hash))
        await db.commit()
        job_id = job.id

    def _search_then_supersede(payload):
        result = run_search(payload)
        conn = sqlite3.connect(db_path)
        try:
            conn.execute("UPDATE optimization_jobs SET status = 'cancelled' WHERE id = ?", (job_id,))
            conn.commit()
        finally:
            conn.close()
        return result

    monkeypatch.setattr("workers.optimization.run_search", _search_then_supersede)

    async with session_factory() as db:
        summary = await process_job(db, job_id)
    assert summary == {"status": "skipped", "reason": "job_cancelled", "job_id": job_id}

    async with session_factory() as db:
        stored = await get_job(db, job_id)
        assert stored.status == "cancelled"
        assert stored.result is None
    await engine.dispose()
