"""
Job Records — durable optimization work and its result lifecycle.

Payloads and results are decoded at the boundary: the payload is a tagged
union on ``method`` (grid / ai) and the parameters inside payloads and
results are validated against a per-model schema. At most one pending or
running job exists per (sku, model, method); a second request is coalesced
into the in-flight job.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Callable, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import ACTIVE_JOB_STATUSES, OptimizationJob
from ml.fingerprint import is_current_version
from ml.metrics_contract import resolve_metric_weights
from optimization.cache import OptimizationCacheStore
from optimization.entries import OptimizedParameterSet
from optimization.errors import InvalidJobPayload
from optimization.queue import OptimizationQueueItem

logger = structlog.get_logger()


# ── Per-model parameter schemas ──────────────────────────────────────────


class _Parameters(BaseModel):
    model_config = ConfigDict(extra="forbid")


class MovingAverageParameters(_Parameters):
    window: int = Field(3, ge=1, le=52)


class SimpleExponentialSmoothingParameters(_Parameters):
    alpha: float = Field(0.3, gt=0, le=1)


class DoubleExponentialSmoothingParameters(_Parameters):
    alpha: float = Field(0.3, gt=0, le=1)
    beta: float = Field(0.1, gt=0, le=1)


class SeasonalMovingAverageParameters(_Parameters):
    window: int = Field(3, ge=1, le=52)


class HoltWintersParameters(_Parameters):
    alpha: float = Field(0.3, gt=0, le=1)
    beta: float = Field(0.1, gt=0, le=1)
    gamma: float = Field(0.1, gt=0, le=1)


PARAMETER_SCHEMAS: dict[str, type[_Parameters]] = {
    "moving_average": MovingAverageParameters,
    "simple_exponential_smoothing": SimpleExponentialSmoothingParameters,
    "double_exponential_smoothing": DoubleExponentialSmoothingParameters,
    "seasonal_moving_average": SeasonalMovingAverageParameters,
    "holt_winters": HoltWintersParameters,
}


def decode_parameters(model_id: str, raw: Any) -> dict[str, float]:
    schema = PARAMETER_SCHEMAS.get(model_id)
    if schema is None:
        raise InvalidJobPayload(f"Model {model_id!r} has no tunable parameters")
    try:
        return schema.model_validate(raw or {}).model_dump()
    except ValidationError as exc:
        raise InvalidJobPayload(f"Invalid parameters for {model_id}: {exc}") from exc


# ── Payload (tagged union on method) ─────────────────────────────────────


class _JobPayloadBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sku: str = Field(..., min_length=1, max_length=255)
    model_id: str
    data_hash: str
    history: list[float] = Field(..., min_length=1)
    parameters: dict[str, float] = Field(default_factory=dict)
    metric_weights: dict[str, float] | None = None
    seasonal_period: int = Field(12, ge=1)
    validation_ratio: float = Field(0.2, gt=0, lt=1)

    @field_validator("model_id")
    @classmethod
    def _tunable_model(cls, value: str) -> str:
        if value not in PARAMETER_SCHEMAS:
            raise ValueError(f"model {value!r} has no tunable parameters")
        return value

    @field_validator("data_hash")
    @classmethod
    def _current_fingerprint(cls, value: str) -> str:
        if not is_current_version(value):
            raise ValueError("data_hash was not produced by the current fingerprint version")
        return value

    @field_validator("metric_weights")
    @classmethod
    def _known_weights(cls, value: dict[str, float] | None) -> dict[str, float] | None:
        return resolve_metric_weights(value) if value else None


class GridJobPayload(_JobPayloadBase):
    method: Literal["grid"] = "grid"


class AIJobPayload(_JobPayloadBase):
    method: Literal["ai"] = "ai"
    top_fraction: float = Field(0.2, gt=0, le=1)


JobPayload = Annotated[Union[GridJobPayload, AIJobPayload], Field(discriminator="method")]
_payload_adapter: TypeAdapter = TypeAdapter(JobPayload)


def decode_payload(raw: Any) -> GridJobPayload | AIJobPayload:
    try:
        payload = _payload_adapter.validate_python(raw)
    except ValidationError as exc:
        raise InvalidJobPayload(str(exc)) from exc
    payload.parameters = decode_parameters(payload.model_id, payload.parameters)
    return payload


def build_payload(method: str, **fields: Any) -> GridJobPayload | AIJobPayload:
    return decode_payload({**fields, "method": method})


# ── Result ───────────────────────────────────────────────────────────────


class JobResult(BaseModel):
    parameters: dict[str, float]
    accuracy: float = Field(..., ge=0, le=100)
    metrics: dict[str, float] = Field(default_factory=dict)
    confidence: float | None = Field(None, ge=0, le=100)
    reasoning: str | None = None
    expected_accuracy: float | None = None
    training_size: int = 0
    validation_size: int = 0


def decode_result(model_id: str, raw: Any) -> JobResult:
    try:
        result = JobResult.model_validate(raw)
    except ValidationError as exc:
        raise InvalidJobPayload(f"Invalid result for {model_id}: {exc}") from exc
    result.parameters = decode_parameters(model_id, result.parameters)
    return result


# ── Dedup hash ───────────────────────────────────────────────────────────


def compute_optimization_hash(
    sku: str,
    model_id: str,
    method: str,
    data_hash: str,
    parameters: dict[str, Any] | None = None,
    metric_weights: dict[str, float] | None = None,
) -> str:
    """sha256 over a key-sorted JSON document; unset weights use the defaults."""
    document = {
        "sku": sku,
        "modelId": model_id,
        "method": method,
        "dataHash": data_hash,
        "parameters": parameters or {},
        "metricWeights": resolve_metric_weights(metric_weights),
    }
    encoded = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


# ── Repository ───────────────────────────────────────────────────────────

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "failed", "cancelled"}),
    "running": frozenset({"completed", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


def _transition(job: OptimizationJob, status: str) -> None:
    if status not in ALLOWED_TRANSITIONS.get(job.status, frozenset()):
        raise ValueError(f"Job {job.id} cannot move from {job.status} to {status}")
    job.status = status
    job.updated_at = datetime.utcnow()


async def find_active_job(db: AsyncSession, sku: str, model_id: str, method: str) -> OptimizationJob | None:
    result = await db.execute(
        select(OptimizationJob)
        .where(
            OptimizationJob.sku == sku,
            OptimizationJob.model_id == model_id,
            OptimizationJob.method == method,
            OptimizationJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(OptimizationJob.created_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_job(db: AsyncSession, job_id: int) -> OptimizationJob | None:
    return await db.get(OptimizationJob, job_id)


async def create_or_coalesce_job(
    db: AsyncSession,
    payload: GridJobPayload | AIJobPayload,
    *,
    priority: int = 1,
    reason: str = "manual",
) -> tuple[OptimizationJob, bool]:
    """
    Create a pending job, or return the in-flight one for the same request.

    An in-flight job for the same pair and method is reused only when its
    optimization hash matches; one computed on other data, parameters or
    weights is cancelled and replaced. Returns ``(job, created)``. Flushes
    but does not commit.
    """
    optimization_hash = compute_optimization_hash(
        payload.sku,
        payload.model_id,
        payload.method,
        payload.data_hash,
        payload.parameters,
        payload.metric_weights,
    )
    existing = await find_active_job(db, payload.sku, payload.model_id, payload.method)
    if existing is not None:
        if existing.optimization_hash == optimization_hash:
            logger.info(
                "optimization_job.coalesced",
                job_id=existing.id,
                sku=payload.sku,
                model_id=payload.model_id,
                method=payload.method,
            )
            return existing, False
        _transition(existing, "cancelled")
        existing.error = f"Superseded by a request for data {payload.data_hash}"
        await db.flush()
        logger.info(
            "optimization_job.superseded",
            job_id=existing.id,
            sku=payload.sku,
            model_id=payload.model_id,
            method=payload.method,
            old_data_hash=existing.data_hash,
            new_data_hash=payload.data_hash,
        )

    job = OptimizationJob(
        sku=payload.sku,
        model_id=payload.model_id,
        method=payload.method,
        payload=payload.model_dump(mode="json"),
        status="pending",
        progress=0,
        attempts=0,
        priority=priority,
        reason=reason,
        data_hash=payload.data_hash,
        optimization_hash=optimization_hash,
    )
    try:
        async with db.begin_nested():
            db.add(job)
    except IntegrityError:
        # lost a race with another dispatcher; the unique in-flight index holds
        existing = await find_active_job(db, payload.sku, payload.model_id, payload.method)
        if existing is None:
            raise
        return existing, False

    logger.info(
        "optimization_job.created",
        job_id=job.id,
        sku=job.sku,
        model_id=job.model_id,
        method=job.method,
        reason=reason,
    )
    return job, True


async def mark_running(db: AsyncSession, job: OptimizationJob) -> None:
    if job.status == "running":
        job.updated_at = datetime.utcnow()
    else:
        _transition(job, "running")
    job.attempts = (job.attempts or 0) + 1
    job.progress = 0
    await db.flush()


async def update_progress(db: AsyncSession, job: OptimizationJob, progress: int) -> None:
    job.progress = max(0, min(100, int(progress)))
    job.updated_at = datetime.utcnow()
    await db.flush()


async def complete_job(db: AsyncSession, job: OptimizationJob, result: JobResult) -> None:
    _transition(job, "completed")
    job.progress = 100
    job.result = result.model_dump(mode="json")
    job.error = None
    await db.flush()


async def fail_job(db: AsyncSession, job: OptimizationJob, error: str) -> None:
    _transition(job, "failed")
    job.error = error
    await db.flush()


async def cancel_job(db: AsyncSession, job: OptimizationJob) -> bool:
    if job.status not in ACTIVE_JOB_STATUSES:
        return False
    _transition(job, "cancelled")
    await db.flush()
    return True


# ── Result resolution ────────────────────────────────────────────────────


def _job_timestamp(job: OptimizationJob) -> float:
    finished = job.updated_at or datetime.utcnow()
    if finished.tzinfo is None:
        finished = finished.replace(tzinfo=timezone.utc)
    return finished.timestamp()


def resolve_job_result(job: OptimizationJob, cache: OptimizationCacheStore) -> OptimizedParameterSet | None:
    """
    Write a completed job's parameters into the cache.

    Failed, cancelled and unfinished jobs yield None: the pair keeps falling
    back to whatever else is cached. A grid result is also copied into the
    manual slot when no usable manual set exists yet. The selected method is
    never changed.
    """
    if job.status != "completed":
        if job.status == "failed":
            logger.warning(
                "optimization_job.failed",
                job_id=job.id,
                sku=job.sku,
                model_id=job.model_id,
                method=job.method,
                error=job.error,
            )
        return None

    try:
        result = decode_result(job.model_id, job.result)
    except InvalidJobPayload as exc:
        logger.error("optimization_job.result_invalid", job_id=job.id, error=str(exc))
        return None

    parameter_set = OptimizedParameterSet(
        parameters=result.parameters,
        timestamp=_job_timestamp(job),
        data_hash=job.data_hash,
        method=job.method,
        confidence=result.confidence,
        reasoning=result.reasoning,
        expected_accuracy=result.expected_accuracy if result.expected_accuracy is not None else result.accuracy,
    )
    cache.set(job.sku, job.model_id, job.method, parameter_set)
    if job.method == "grid" and not cache.has_valid(job.sku, job.model_id, "manual", job.data_hash):
        cache.set(job.sku, job.model_id, "manual", parameter_set.as_manual(parameter_set.timestamp))
    return parameter_set


# ── Dispatch ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DispatchedJob:
    job_id: int
    sku: str
    model_id: str
    method: str
    created: bool


class SqlJobDispatcher:
    """Persists jobs through the job table and hands new ones to Celery."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        task_name: str,
        send_task: Callable[..., Any] | None = None,
    ):
        self.session_factory = session_factory
        self.task_name = task_name
        self._send_task = send_task

    def _sender(self) -> Callable[..., Any]:
        if self._send_task is not None:
            return self._send_task
        from workers.celery_app import celery_app

        return celery_app.send_task

    async def dispatch(
        self,
        item: OptimizationQueueItem,
        payload: GridJobPayload | AIJobPayload,
    ) -> DispatchedJob:
        async with self.session_factory() as db:
            job, created = await create_or_coalesce_job(db, payload, priority=item.priority, reason=item.reason)
            await db.commit()
            job_id = job.id
        if created:
            self._sender()(self.task_name, kwargs={"job_id": job_id})
        return DispatchedJob(job_id=job_id, sku=item.sku, model_id=item.model_id, method=item.method, created=created)

    async def fetch(self, job_ids: list[int]) -> list[OptimizationJob]:
        if not job_ids:
            return []
        async with self.session_factory() as db:
            result = await db.execute(select(OptimizationJob).where(OptimizationJob.id.in_(job_ids)))
            return list(result.scalars().all())
