"""
Optimization Worker — runs grid and heuristic parameter searches for queued jobs.

One task invocation handles one OptimizationJob row: pending → running →
completed/failed. Bad payloads and searches that cannot run on the data are
terminal failures written to the row; database and broker errors are retried.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.models import OptimizationJob
from ml.grid_search import SearchOutcome, grid_search, heuristic_search
from optimization.errors import InvalidJobPayload
from optimization.jobs import (
    AIJobPayload,
    GridJobPayload,
    JobResult,
    complete_job,
    decode_payload,
    fail_job,
    get_job,
    mark_running,
)
from workers.celery_app import celery_app

logger = structlog.get_logger()


def search_to_result(outcome: SearchOutcome) -> JobResult:
    best = outcome.best
    return JobResult(
        parameters=best.parameters,
        accuracy=best.accuracy,
        metrics=best.metrics,
        confidence=outcome.confidence,
        reasoning=outcome.reasoning,
        expected_accuracy=best.accuracy,
        training_size=outcome.training_size,
        validation_size=outcome.validation_size,
    )


def run_search(payload: GridJobPayload | AIJobPayload) -> JobResult:
    """Run the search a decoded payload asks for."""
    options = {
        "seasonal_period": payload.seasonal_period,
        "validation_ratio": payload.validation_ratio,
        "metric_weights": payload.metric_weights,
    }
    if isinstance(payload, AIJobPayload):
        outcome = heuristic_search(payload.history, payload.model_id, top_fraction=payload.top_fraction, **options)
    else:
        outcome = grid_search(payload.history, payload.model_id, **options)
    return search_to_result(outcome)


async def _superseded(db: AsyncSession, job: OptimizationJob) -> bool:
    """True when the job was cancelled while its search ran."""
    await db.refresh(job)
    if job.status == "running":
        return False
    logger.info("optimization_job.superseded", job_id=job.id, sku=job.sku, model_id=job.model_id, status=job.status)
    return True


async def process_job(db: AsyncSession, job_id: int, *, resume: bool = False) -> dict[str, Any]:
    """
    Execute one job inside ``db``; commits after each state change.

    ``resume`` lets a retried task pick up a job its previous attempt left running.
    """
    job = await get_job(db, job_id)
    if job is None:
        logger.warning("optimization_job.missing", job_id=job_id)
        return {"status": "skipped", "reason": "not_found", "job_id": job_id}
    if job.status != "pending" and not (resume and job.status == "running"):
        logger.info("optimization_job.not_pending", job_id=job_id, status=job.status)
        return {"status": "skipped", "reason": f"job_{job.status}", "job_id": job_id}

    await mark_running(db, job)
    await db.commit()

    try:
        payload = decode_payload(job.payload)
        result = run_search(payload)
    except (InvalidJobPayload, ValueError) as exc:
        if await _superseded(db, job):
            return {"status": "skipped", "reason": "job_cancelled", "job_id": job_id}
        await fail_job(db, job, str(exc))
        await db.commit()
        logger.warning(
            "optimization_job.failed",
            job_id=job_id,
            sku=job.sku,
            model_id=job.model_id,
            method=job.method,
            error=str(exc),
        )
        return {"status": "failed", "job_id": job_id, "error": str(exc)}

    if await _superseded(db, job):
        return {"status": "skipped", "reason": "job_cancelled", "job_id": job_id}
    await complete_job(db, job, result)
    await db.commit()
    summary = {
        "status": "completed",
        "job_id": job_id,
        "sku": job.sku,
        "model_id": job.model_id,
        "method": job.method,
        "accuracy": round(result.accuracy, 2),
        "parameters": result.parameters,
        "completed_at": datetime.now(timezone.utc).isoformat(),
    }
    logger.info("optimization_job.completed", **summary)
    return summary


@celery_app.task(
    name="workers.optimization.run_optimization_job",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
)
def run_optimization_job(self, job_id: int):
    """Run the grid or heuristic search for one optimization job."""
    from core.config import get_settings

    async def _run():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                return await process_job(db, job_id, resume=self.request.retries > 0)
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_run())
    except (OperationalError, OSError) as exc:
        logger.error("optimization_job.infrastructure_error", job_id=job_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
