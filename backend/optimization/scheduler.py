"""
Optimization Queue Scheduler

``scan`` decides which (SKU, model) pairs need optimizing. The scheduler
wraps it in a single-flight session per dataset fingerprint: one session
dispatches jobs and waits for their results, a second trigger for the same
data is refused while it runs, and a trigger for different data cancels the
old session so its late results are ignored. A completed session is not
run again for the same data until its results could have expired.

The scheduler never runs an optimization itself; jobs go to the worker
through a dispatcher (see optimization.jobs.SqlJobDispatcher).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Protocol, Sequence

import structlog

from db.models import TERMINAL_JOB_STATUSES, OptimizationJob
from ml.fingerprint import dataset_fingerprint, fingerprint
from ml.model_registry import ModelConfig, default_models, has_tunable_parameters
from ml.observations import ObservationPoint, group_by_sku, history_values
from optimization.cache import OptimizationCacheStore
from optimization.entries import OptimizedParameterSet
from optimization.jobs import AIJobPayload, DispatchedJob, GridJobPayload, build_payload, resolve_job_result
from optimization.queue import OptimizationQueue, OptimizationQueueItem

logger = structlog.get_logger()


@dataclass(frozen=True)
class ScanResult:
    sku: str
    models: list[str]


def scan(
    points: Iterable[ObservationPoint],
    models: Sequence[ModelConfig],
    cache: OptimizationCacheStore,
    *,
    ai_enabled: bool = True,
    min_observations: int = 3,
) -> list[ScanResult]:
    """
    Pairs needing optimization, grouped by SKU.

    A pair is flagged when there is no usable grid set and, while automated
    search is enabled, no usable ai set either. SKUs with fewer than
    ``min_observations`` points and models without tunable parameters are
    never flagged. Reading the cache here does not touch its hit counters.
    """
    candidates = [m for m in models if m.enabled and has_tunable_parameters(m)]
    results = []
    for sku, group in group_by_sku(points).items():
        if len(group) < min_observations:
            continue
        data_hash = fingerprint(group)
        flagged = []
        for model in candidates:
            if cache.has_valid(sku, model.id, "grid", data_hash):
                continue
            if ai_enabled and cache.has_valid(sku, model.id, "ai", data_hash):
                continue
            flagged.append(model.id)
        if flagged:
            results.append(ScanResult(sku=sku, models=flagged))
    return results


# ── Session ──────────────────────────────────────────────────────────────


class SessionState(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    AWAITING_RESULTS = "awaiting_results"


@dataclass
class OptimizationSession:
    fingerprint: str
    state: SessionState = SessionState.IDLE
    job_ids: set[int] = field(default_factory=set)
    finished_job_ids: set[int] = field(default_factory=set)
    completed: bool = False
    completed_at: float | None = None
    cancelled: bool = False

    @property
    def in_flight(self) -> bool:
        return self.state is not SessionState.IDLE

    def begin_dispatch(self) -> None:
        if self.in_flight:
            raise RuntimeError(f"Session {self.fingerprint} is already {self.state.value}")
        self.state = SessionState.DISPATCHING
        self.completed = False
        self.completed_at = None

    def dispatched(self, job_ids: Iterable[int], at: float) -> None:
        self.job_ids.update(job_ids)
        if self.job_ids - self.finished_job_ids:
            self.state = SessionState.AWAITING_RESULTS
        else:
            self.finish(at)

    def job_finished(self, job_id: int, at: float) -> None:
        self.finished_job_ids.add(job_id)
        if self.state is SessionState.AWAITING_RESULTS and not (self.job_ids - self.finished_job_ids):
            self.finish(at)

    def finish(self, at: float) -> None:
        self.state = SessionState.IDLE
        self.completed = True
        self.completed_at = at

    def abort(self) -> None:
        self.state = SessionState.IDLE

    def cancel(self) -> None:
        self.cancelled = True
        self.state = SessionState.IDLE


class JobDispatcher(Protocol):
    async def dispatch(self, item: OptimizationQueueItem, payload: GridJobPayload | AIJobPayload) -> DispatchedJob: ...

    async def fetch(self, job_ids: list[int]) -> list[OptimizationJob]: ...


@dataclass(frozen=True)
class TriggerOutcome:
    status: str  # dispatched | in_flight | empty | skipped | paused | cancelled
    fingerprint: str
    scan: list[ScanResult] = field(default_factory=list)
    jobs: list[DispatchedJob] = field(default_factory=list)


class OptimizationScheduler:
    def __init__(
        self,
        cache: OptimizationCacheStore,
        dispatcher: JobDispatcher,
        *,
        models: Sequence[ModelConfig] | None = None,
        ai_enabled: bool = True,
        ai_failure_threshold: int = 3,
        min_observations: int = 3,
        seasonal_period: int = 12,
        validation_ratio: float = 0.2,
    ):
        self.cache = cache
        self.dispatcher = dispatcher
        self.models = list(models) if models is not None else default_models()
        self.ai_failure_threshold = ai_failure_threshold
        self.min_observations = min_observations
        self.seasonal_period = seasonal_period
        self.validation_ratio = validation_ratio
        self.queue = OptimizationQueue(ai_enabled=ai_enabled)
        self.consecutive_ai_failures = 0
        self.session: OptimizationSession | None = None

    @property
    def ai_enabled(self) -> bool:
        return self.queue.ai_enabled

    def set_ai_enabled(self, enabled: bool) -> None:
        self.queue.set_ai_enabled(enabled)
        self.consecutive_ai_failures = 0

    def _session_for(self, data_fingerprint: str) -> OptimizationSession:
        current = self.session
        if current is not None and current.fingerprint == data_fingerprint:
            return current
        if current is not None and current.in_flight:
            current.cancel()
            logger.info(
                "optimization_scheduler.session_cancelled",
                fingerprint=current.fingerprint,
                replaced_by=data_fingerprint,
                pending_jobs=len(current.job_ids - current.finished_job_ids),
            )
        self.session = OptimizationSession(fingerprint=data_fingerprint)
        return self.session

    def _session_outlived_cache(self, session: OptimizationSession) -> bool:
        """True once the session finished longer ago than the cache expiry."""
        if session.completed_at is None:
            return False
        return self.cache.now() - session.completed_at > self.cache.expiry_seconds

    def _queue_items(self, results: list[ScanResult], reason: str) -> list[OptimizationQueueItem]:
        methods = ["grid", "ai"] if self.ai_enabled else ["grid"]
        return [
            OptimizationQueueItem(sku=r.sku, model_id=model_id, reason=reason, method=method)
            for r in results
            for model_id in r.models
            for method in methods
        ]

    async def trigger(
        self,
        points: Sequence[ObservationPoint],
        *,
        reason: str = "csv_upload",
        force: bool = False,
    ) -> TriggerOutcome:
        """Scan and dispatch one optimization session for the current data."""
        data_fingerprint = dataset_fingerprint(points)
        session = self._session_for(data_fingerprint)

        if session.in_flight:
            logger.info(
                "optimization_scheduler.dispatch_skipped",
                fingerprint=data_fingerprint,
                state=session.state.value,
            )
            return TriggerOutcome(status="in_flight", fingerprint=data_fingerprint)
        if session.completed and not force:
            if not self._session_outlived_cache(session):
                self.cache.record_skipped()
                return TriggerOutcome(status="skipped", fingerprint=data_fingerprint)
            logger.info(
                "optimization_scheduler.session_expired",
                fingerprint=data_fingerprint,
                completed_at=session.completed_at,
            )

        # claimed before the first await so a concurrent trigger sees it
        session.begin_dispatch()
        results = scan(
            points,
            self.models,
            self.cache,
            ai_enabled=self.ai_enabled,
            min_observations=self.min_observations,
        )
        if not results:
            session.finish(self.cache.now())
            logger.debug("optimization_scheduler.nothing_to_do", fingerprint=data_fingerprint)
            return TriggerOutcome(status="empty", fingerprint=data_fingerprint)

        self.queue.add(self._queue_items(results, reason))
        items = self.queue.drain()
        if not items:
            session.abort()
            logger.info("optimization_scheduler.queue_paused", fingerprint=data_fingerprint, queued=len(self.queue))
            return TriggerOutcome(status="paused", fingerprint=data_fingerprint, scan=results)

        grouped = group_by_sku(points)
        dispatched: list[DispatchedJob] = []
        try:
            for item in items:
                group = grouped[item.sku]
                model = next(m for m in self.models if m.id == item.model_id)
                payload = build_payload(
                    item.method,
                    sku=item.sku,
                    model_id=item.model_id,
                    data_hash=fingerprint(group),
                    history=history_values(group),
                    parameters=dict(model.parameters),
                    seasonal_period=self.seasonal_period,
                    validation_ratio=self.validation_ratio,
                )
                dispatched.append(await self.dispatcher.dispatch(item, payload))
        except Exception:
            session.abort()
            logger.error(
                "optimization_scheduler.dispatch_failed",
                fingerprint=data_fingerprint,
                dispatched=len(dispatched),
                exc_info=True,
            )
            raise

        if session.cancelled:
            return TriggerOutcome(status="cancelled", fingerprint=data_fingerprint, scan=results, jobs=dispatched)
        session.dispatched((job.job_id for job in dispatched), self.cache.now())
        logger.info(
            "optimization_scheduler.dispatched",
            fingerprint=data_fingerprint,
            pairs=sum(len(r.models) for r in results),
            jobs=len(dispatched),
            coalesced=sum(1 for job in dispatched if not job.created),
        )
        return TriggerOutcome(status="dispatched", fingerprint=data_fingerprint, scan=results, jobs=dispatched)

    def record_job_outcome(self, job: OptimizationJob) -> OptimizedParameterSet | None:
        """
        Apply a finished job. Jobs outside the current session are ignored.

        Consecutive ai failures reaching the threshold disable automated
        search; a successful ai result resets the count.
        """
        session = self.session
        if session is None or session.cancelled or job.id not in session.job_ids:
            logger.debug("optimization_scheduler.stale_result_ignored", job_id=job.id)
            return None
        if job.status not in TERMINAL_JOB_STATUSES:
            return None
        if job.id in session.finished_job_ids:
            return None

        parameter_set = resolve_job_result(job, self.cache)
        if job.method == "ai":
            if job.status == "failed":
                self.consecutive_ai_failures += 1
                if self.ai_enabled and self.consecutive_ai_failures >= self.ai_failure_threshold:
                    self.queue.set_ai_enabled(False)
                    logger.warning(
                        "optimization_scheduler.ai_disabled",
                        consecutive_failures=self.consecutive_ai_failures,
                        threshold=self.ai_failure_threshold,
                    )
            elif job.status == "completed":
                self.consecutive_ai_failures = 0
        session.job_finished(job.id, self.cache.now())
        return parameter_set

    async def collect(self) -> int:
        """Poll the dispatcher for finished jobs of the current session; returns how many were applied."""
        session = self.session
        if session is None or session.state is not SessionState.AWAITING_RESULTS:
            return 0
        pending = sorted(session.job_ids - session.finished_job_ids)
        applied = 0
        for job in await self.dispatcher.fetch(pending):
            if job.status in TERMINAL_JOB_STATUSES:
                self.record_job_outcome(job)
                applied += 1
        return applied
