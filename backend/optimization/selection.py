"""
Method Selection — which parameter set drives a (SKU, model) forecast.

``resolve_parameter_set`` is the single fallback chain used everywhere:
the explicitly selected method first, then ai → grid → manual, returning
the first set that is not stale. ``MethodSelector`` layers the per-pair
state machine (manual / ai / grid) on top of a cache store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from ml.fingerprint import is_current_version
from ml.model_registry import ModelConfig, coerce_parameters
from optimization.entries import METHODS, CacheEntry, OptimizedParameterSet, validate_method

if TYPE_CHECKING:
    from optimization.cache import OptimizationCacheStore

logger = structlog.get_logger()

FALLBACK_ORDER = ("ai", "grid", "manual")


def is_stale(
    parameter_set: OptimizedParameterSet | None,
    data_hash: str,
    *,
    now: float,
    expiry_seconds: float,
) -> bool:
    """Stale when missing, from another fingerprint version, for other data, or past expiry."""
    if parameter_set is None:
        return True
    if not is_current_version(parameter_set.data_hash):
        return True
    if parameter_set.data_hash != data_hash:
        return True
    return now - parameter_set.timestamp > expiry_seconds


def resolution_order(selected: str | None) -> tuple[str, ...]:
    if selected is None:
        return FALLBACK_ORDER
    return (selected,) + tuple(m for m in FALLBACK_ORDER if m != selected)


def resolve_parameter_set(
    entry: CacheEntry | None,
    data_hash: str,
    *,
    now: float,
    expiry_seconds: float,
) -> OptimizedParameterSet | None:
    if entry is None:
        return None
    for method in resolution_order(entry.selected):
        candidate = entry.slot(method)
        if not is_stale(candidate, data_hash, now=now, expiry_seconds=expiry_seconds):
            return candidate
    return None


# ── Per-pair state machine ───────────────────────────────────────────────


@dataclass(frozen=True)
class ResolvedParameters:
    sku: str
    model_id: str
    method: str
    parameters: dict[str, float]
    explicit: bool
    confidence: float | None = None
    reasoning: str | None = None
    expected_accuracy: float | None = None


class MethodSelector:
    """
    State of one (SKU, model) pair: manual, ai or grid.

    Starts in ``manual`` with the model's declared defaults. Explicit
    selections are stored in the cache so they survive restarts; switching
    away from a method never deletes its parameters.
    """

    def __init__(self, cache: OptimizationCacheStore, sku: str, model: ModelConfig):
        self.cache = cache
        self.sku = sku
        self.model = model

    @property
    def selected(self) -> str | None:
        entry = self.cache.entry(self.sku, self.model.id)
        return entry.selected if entry else None

    def _defaults(self, explicit: bool) -> ResolvedParameters:
        return ResolvedParameters(
            sku=self.sku,
            model_id=self.model.id,
            method="manual",
            parameters=dict(self.model.parameters),
            explicit=explicit,
        )

    def resolve(self, data_hash: str) -> ResolvedParameters:
        parameter_set = self.cache.get(self.sku, self.model.id, data_hash=data_hash)
        explicit = self.selected is not None
        if parameter_set is None:
            return self._defaults(explicit)
        return ResolvedParameters(
            sku=self.sku,
            model_id=self.model.id,
            method=parameter_set.method,
            parameters={**self.model.parameters, **parameter_set.parameters},
            explicit=explicit,
            confidence=parameter_set.confidence,
            reasoning=parameter_set.reasoning,
            expected_accuracy=parameter_set.expected_accuracy,
        )

    def select(self, method: str, data_hash: str) -> ResolvedParameters:
        validate_method(method)
        self.cache.set_selected(self.sku, self.model.id, method)
        resolved = self.resolve(data_hash)
        if resolved.method != method:
            logger.debug(
                "method_selector.fallback",
                sku=self.sku,
                model_id=self.model.id,
                requested=method,
                resolved=resolved.method,
            )
        return resolved

    def clear_selection(self, data_hash: str) -> ResolvedParameters:
        self.cache.set_selected(self.sku, self.model.id, None)
        return self.resolve(data_hash)

    def edit_parameters(self, parameters: dict[str, Any], data_hash: str) -> ResolvedParameters:
        """Snapshot edited values into the manual slot and force the manual state."""
        edited = {**self.model.parameters, **coerce_parameters(self.model.id, parameters)}
        self.cache.set(
            self.sku,
            self.model.id,
            "manual",
            OptimizedParameterSet(
                parameters=edited,
                timestamp=self.cache.now(),
                data_hash=data_hash,
                method="manual",
            ),
        )
        self.cache.set_selected(self.sku, self.model.id, "manual")
        return self.resolve(data_hash)


def available_methods(entry: CacheEntry | None, data_hash: str, *, now: float, expiry_seconds: float) -> list[str]:
    """Methods holding a usable parameter set, in declaration order."""
    if entry is None:
        return []
    return [
        m for m in METHODS if not is_stale(entry.slot(m), data_hash, now=now, expiry_seconds=expiry_seconds)
    ]
