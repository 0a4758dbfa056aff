"""
Optimizations Router — job submission, method selection, resolved parameters and export.
"""

from datetime import datetime
from typing import Any, Literal

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_cache_store, get_db, get_scheduler
from core.config import get_settings
from ml.model_registry import get_model
from ml.observations import ObservationPoint
from optimization.cache import OptimizationCacheStore
from optimization.errors import InvalidJobPayload
from optimization.jobs import build_payload, cancel_job, create_or_coalesce_job, get_job, resolve_job_result
from optimization.scheduler import OptimizationScheduler
from optimization.selection import MethodSelector, ResolvedParameters
from workers.celery_app import celery_app

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/optimizations", tags=["optimizations"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class JobSubmission(BaseModel):
    sku: str = Field(..., min_length=1, max_length=255)
    model_id: str
    method: Literal["manual", "grid", "ai"]
    data_hash: str
    history: list[float] = Field(default_factory=list)
    parameters: dict[str, float] = Field(default_factory=dict)
    metric_weights: dict[str, float] | None = None
    seasonal_period: int | None = Field(None, ge=1)
    priority: int = Field(1, ge=0, le=10)
    reason: str = "manual"


class JobResponse(BaseModel):
    id: int
    sku: str
    model_id: str
    method: str
    status: str
    progress: int
    attempts: int
    priority: int
    reason: str
    data_hash: str
    optimization_hash: str
    result: dict[str, Any] | None
    error: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SubmissionResponse(BaseModel):
    method: str
    created: bool
    job: JobResponse | None = None
    resolved: dict[str, Any] | None = None


class SelectionRequest(BaseModel):
    sku: str = Field(..., min_length=1)
    model_id: str
    method: Literal["manual", "grid", "ai"] | None
    data_hash: str


class ResolvedResponse(BaseModel):
    sku: str
    model_id: str
    method: str
    parameters: dict[str, float]
    explicit: bool
    confidence: float | None = None
    reasoning: str | None = None
    expected_accuracy: float | None = None


class ObservationIn(BaseModel):
    sku: str = Field(..., min_length=1, max_length=255)
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    value: float
    is_outlier: bool = False
    note: str | None = None


class ScanRequest(BaseModel):
    points: list[ObservationIn]
    reason: str = "csv_upload"
    force: bool = False


class ScanPair(BaseModel):
    sku: str
    models: list[str]


class DispatchedJobResponse(BaseModel):
    job_id: int
    sku: str
    model_id: str
    method: str
    created: bool


class ScanResponse(BaseModel):
    status: str
    fingerprint: str
    pairs: list[ScanPair]
    jobs: list[DispatchedJobResponse]
    session_state: str


class CollectResponse(BaseModel):
    applied: int
    session_state: str
    completed: bool
    ai_enabled: bool


def _session_state(scheduler: OptimizationScheduler) -> str:
    return scheduler.session.state.value if scheduler.session is not None else "idle"


def _resolved(resolved: ResolvedParameters) -> ResolvedResponse:
    return ResolvedResponse(
        sku=resolved.sku,
        model_id=resolved.model_id,
        method=resolved.method,
        parameters=resolved.parameters,
        explicit=resolved.explicit,
        confidence=resolved.confidence,
        reasoning=resolved.reasoning,
        expected_accuracy=resolved.expected_accuracy,
    )


def _selector(cache: OptimizationCacheStore, sku: str, model_id: str) -> MethodSelector:
    try:
        model = get_model(model_id)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown model: {model_id}")
    return MethodSelector(cache, sku, model)


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/jobs", response_model=SubmissionResponse)
async def submit_job(
    submission: JobSubmission,
    response: Response,
    db: AsyncSession = Depends(get_db),
    cache: OptimizationCacheStore = Depends(get_cache_store),
):
    """
    Submit parameters for a (SKU, model) pair.

    ``manual`` is written to the cache immediately and becomes the selected
    method. ``grid`` / ``ai`` create a pending job, or report the job already
    in flight for the same pair and method.
    """
    settings = get_settings()
    if submission.method == "manual":
        selector = _selector(cache, submission.sku, submission.model_id)
        try:
            resolved = selector.edit_parameters(submission.parameters, submission.data_hash)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        logger.info("optimizations.manual_saved", sku=submission.sku, model_id=submission.model_id)
        return SubmissionResponse(method="manual", created=False, resolved=_resolved(resolved).model_dump())

    if submission.method == "ai" and not settings.ai_optimization_enabled:
        raise HTTPException(status_code=409, detail="Automated optimization is disabled")

    try:
        payload = build_payload(
            submission.method,
            sku=submission.sku,
            model_id=submission.model_id,
            data_hash=submission.data_hash,
            history=submission.history,
            parameters=submission.parameters,
            metric_weights=submission.metric_weights,
            seasonal_period=submission.seasonal_period or settings.default_seasonal_period,
            validation_ratio=settings.optimization_validation_ratio,
        )
    except InvalidJobPayload as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    job, created = await create_or_coalesce_job(db, payload, priority=submission.priority, reason=submission.reason)
    await db.commit()
    if created:
        celery_app.send_task(settings.optimization_task_name, kwargs={"job_id": job.id})
        response.status_code = 201
    return SubmissionResponse(method=submission.method, created=created, job=JobResponse.model_validate(job))


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_optimization_job(job_id: int, db: AsyncSession = Depends(get_db)):
    """Job status, result and error."""
    job = await get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/jobs/{job_id}/apply", response_model=ResolvedResponse | None)
async def apply_job_result(
    job_id: int,
    db: AsyncSession = Depends(get_db),
    cache: OptimizationCacheStore = Depends(get_cache_store),
):
    """Write a finished job's result into the cache. Failed jobs return null."""
    job = await get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status in ("pending", "running"):
        raise HTTPException(status_code=409, detail=f"Job is still {job.status}")
    parameter_set = resolve_job_result(job, cache)
    if parameter_set is None:
        return None
    return _resolved(MethodSelector(cache, job.sku, get_model(job.model_id)).resolve(job.data_hash))


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_optimization_job(job_id: int, db: AsyncSession = Depends(get_db)):
    job = await get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if not await cancel_job(db, job):
        raise HTTPException(status_code=409, detail=f"Job is already {job.status}")
    await db.commit()
    return job


@router.put("/selection", response_model=ResolvedResponse)
async def set_selection(
    request: SelectionRequest,
    cache: OptimizationCacheStore = Depends(get_cache_store),
):
    """Explicitly select a method, or clear the selection with ``null``."""
    selector = _selector(cache, request.sku, request.model_id)
    if request.method is None:
        return _resolved(selector.clear_selection(request.data_hash))
    return _resolved(selector.select(request.method, request.data_hash))


@router.get("/best", response_model=ResolvedResponse)
async def get_best_parameters(
    sku: str = Query(..., min_length=1),
    model_id: str = Query(...),
    data_hash: str = Query(...),
    cache: OptimizationCacheStore = Depends(get_cache_store),
):
    """Parameters currently in effect for the pair; model defaults when nothing usable is cached."""
    return _resolved(_selector(cache, sku, model_id).resolve(data_hash))


@router.get("/export")
async def export_results(
    sku: str | None = None,
    cache: OptimizationCacheStore = Depends(get_cache_store),
):
    return cache.export_rows(sku)


@router.get("/cache/stats")
async def cache_stats(cache: OptimizationCacheStore = Depends(get_cache_store)):
    return cache.stats.as_dict()


@router.delete("/cache", status_code=204)
async def clear_cache(
    sku: str | None = None,
    cache: OptimizationCacheStore = Depends(get_cache_store),
):
    cache.clear(sku)


@router.post("/scan", response_model=ScanResponse)
async def scan_and_dispatch(
    request: ScanRequest,
    scheduler: OptimizationScheduler = Depends(get_scheduler),
):
    """
    Flag pairs lacking usable optimized parameters and dispatch one session of jobs.

    A second scan for the same data while the session runs returns ``in_flight``;
    a scan for new data cancels the running session.
    """
    points = [
        ObservationPoint(
            sku=p.sku,
            date=p.date,
            value=p.value,
            is_outlier=p.is_outlier,
            note=p.note,
        )
        for p in request.points
    ]
    outcome = await scheduler.trigger(points, reason=request.reason, force=request.force)
    return ScanResponse(
        status=outcome.status,
        fingerprint=outcome.fingerprint,
        pairs=[ScanPair(sku=r.sku, models=r.models) for r in outcome.scan],
        jobs=[
            DispatchedJobResponse(
                job_id=job.job_id,
                sku=job.sku,
                model_id=job.model_id,
                method=job.method,
                created=job.created,
            )
            for job in outcome.jobs
        ],
        session_state=_session_state(scheduler),
    )


@router.post("/scan/collect", response_model=CollectResponse)
async def collect_scan_results(scheduler: OptimizationScheduler = Depends(get_scheduler)):
    """Apply finished jobs of the current session to the cache."""
    applied = await scheduler.collect()
    session = scheduler.session
    return CollectResponse(
        applied=applied,
        session_state=_session_state(scheduler),
        completed=bool(session and session.completed),
        ai_enabled=scheduler.ai_enabled,
    )
