"""
Parameter Search — grid search and heuristic refinement for forecast models.

Grid search expands a fixed parameter grid per model, fits on the first part
of the history and scores one-step-ahead walk-forward predictions on the
held-out tail. Heuristic search runs the coarse grid first, narrows each
parameter to the range spanned by the best 20% of candidates and re-searches
a 5-point grid inside that range.

Candidates are ranked by a weighted composite of MAPE/RMSE/MAE/accuracy
(see ml.metrics_contract).
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np
import structlog

from ml.metrics_contract import composite_scores, compute_forecast_metrics, resolve_metric_weights
from ml.model_registry import INTEGER_PARAMETERS, run_forecast

logger = structlog.get_logger()

PARAMETER_GRIDS: dict[str, dict[str, list[float]]] = {
    "moving_average": {"window": [2, 3, 4, 5, 6, 7, 8, 9, 10, 12, 15, 20]},
    "simple_exponential_smoothing": {"alpha": [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9]},
    "double_exponential_smoothing": {
        "alpha": [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9],
        "beta": [0.05, 0.1, 0.15, 0.2, 0.25, 0.3, 0.35, 0.4],
    },
    "seasonal_moving_average": {"window": [2, 3, 4, 5, 6]},
    "holt_winters": {
        "alpha": [0.1, 0.2, 0.3, 0.4, 0.5],
        "beta": [0.1, 0.2, 0.3, 0.4, 0.5],
        "gamma": [0.1, 0.2, 0.3, 0.4, 0.5],
    },
}

PARAMETER_BOUNDS: dict[str, tuple[float, float]] = {
    "alpha": (0.01, 0.99),
    "beta": (0.01, 0.99),
    "gamma": (0.01, 0.99),
    "window": (1, 52),
}

TOP_FRACTION = 0.2
FOCUSED_POINTS = 5

ProgressCallback = Callable[[int, int], None]


@dataclass
class CandidateResult:
    parameters: dict[str, float]
    metrics: dict[str, float] = field(default_factory=dict)
    success: bool = True
    error: str | None = None
    score: float = float("inf")

    @property
    def accuracy(self) -> float:
        return float(self.metrics.get("accuracy", 0.0))


@dataclass
class SearchOutcome:
    model_id: str
    method: str
    best: CandidateResult
    candidates: list[CandidateResult]
    training_size: int
    validation_size: int
    confidence: float | None = None
    reasoning: str | None = None


# ── Grid helpers ─────────────────────────────────────────────────────────


def parameter_grid(model_id: str) -> dict[str, list[float]]:
    if model_id not in PARAMETER_GRIDS:
        raise ValueError(f"No parameter grid defined for model: {model_id}")
    return PARAMETER_GRIDS[model_id]


def parameter_combinations(grid: dict[str, Sequence[float]]) -> list[dict[str, float]]:
    """Cartesian product of a parameter grid, in grid declaration order."""
    if not grid:
        return [{}]
    names = list(grid)
    return [dict(zip(names, values)) for values in itertools.product(*(grid[name] for name in names))]


def split_series(values: Sequence[float], validation_ratio: float = 0.2) -> tuple[list[float], list[float]]:
    split_index = int(len(values) * (1 - validation_ratio))
    return list(values[:split_index]), list(values[split_index:])


# ── Evaluation ───────────────────────────────────────────────────────────


def evaluate_candidate(
    model_id: str,
    parameters: dict[str, float],
    training: Sequence[float],
    validation: Sequence[float],
    seasonal_period: int = 12,
) -> CandidateResult:
    """Score one parameter set with one-step-ahead walk-forward predictions over ``validation``."""
    history = list(training)
    predictions = []
    try:
        for actual in validation:
            predictions.append(run_forecast(model_id, history, 1, parameters, seasonal_period)[0])
            history.append(float(actual))
    except (ValueError, ArithmeticError) as exc:
        return CandidateResult(parameters=dict(parameters), success=False, error=str(exc))
    return CandidateResult(parameters=dict(parameters), metrics=compute_forecast_metrics(validation, predictions))


def rank_candidates(
    candidates: list[CandidateResult],
    metric_weights: dict[str, float] | None = None,
) -> list[CandidateResult]:
    """Successful candidates by ascending composite score, failures last."""
    successful = [c for c in candidates if c.success]
    failed = [c for c in candidates if not c.success]
    for candidate, score in zip(successful, composite_scores([c.metrics for c in successful], metric_weights)):
        candidate.score = score
    return sorted(successful, key=lambda c: (c.score, -c.accuracy)) + failed


def grid_search(
    values: Sequence[float],
    model_id: str,
    *,
    seasonal_period: int = 12,
    validation_ratio: float = 0.2,
    metric_weights: dict[str, float] | None = None,
    grid: dict[str, Sequence[float]] | None = None,
    progress: ProgressCallback | None = None,
) -> SearchOutcome:
    if not values:
        raise ValueError("Data cannot be empty for grid search")
    resolve_metric_weights(metric_weights)
    training, validation = split_series(values, validation_ratio)
    if not training or not validation:
        raise ValueError("Insufficient data for training and validation split")

    combinations = parameter_combinations(grid if grid is not None else parameter_grid(model_id))
    candidates = []
    for idx, parameters in enumerate(combinations, start=1):
        candidates.append(evaluate_candidate(model_id, parameters, training, validation, seasonal_period))
        if progress is not None:
            progress(idx, len(combinations))

    ranked = rank_candidates(candidates, metric_weights)
    best = ranked[0]
    if not best.success:
        raise ValueError(f"No parameter set could be evaluated for {model_id}: {best.error}")

    logger.debug(
        "grid_search.completed",
        model_id=model_id,
        candidates=len(candidates),
        best_accuracy=round(best.accuracy, 2),
    )
    return SearchOutcome(
        model_id=model_id,
        method="grid",
        best=best,
        candidates=ranked,
        training_size=len(training),
        validation_size=len(validation),
    )


# ── Heuristic refinement ─────────────────────────────────────────────────


def promising_ranges(
    candidates: list[CandidateResult],
    top_fraction: float = TOP_FRACTION,
) -> dict[str, tuple[float, float]]:
    """Min/max of each parameter across the best ``top_fraction`` of ranked candidates."""
    successful = [c for c in candidates if c.success]
    if not successful:
        return {}
    top = successful[: max(1, int(len(successful) * top_fraction))]
    ranges = {}
    for name in top[0].parameters:
        column = [float(c.parameters[name]) for c in top]
        ranges[name] = (min(column), max(column))
    return ranges


def _bounded(name: str, value: float) -> float:
    low, high = PARAMETER_BOUNDS.get(name, (-np.inf, np.inf))
    value = min(high, max(low, value))
    if name in INTEGER_PARAMETERS:
        return int(round(value))
    return round(value, 4)


def focused_grid(ranges: dict[str, tuple[float, float]], points: int = FOCUSED_POINTS) -> dict[str, list[float]]:
    """Evenly spaced grid inside each range; a collapsed range widens by 0.1 per step."""
    grid = {}
    for name, (low, high) in ranges.items():
        step = (high - low) / (points - 1) or 0.1
        if name in INTEGER_PARAMETERS:
            step = max(1.0, step)
        values = []
        for idx in range(points):
            value = _bounded(name, low + idx * step)
            if value not in values:
                values.append(value)
        grid[name] = values
    return grid


def search_confidence(candidates: list[CandidateResult]) -> float:
    """
    Confidence in percent from how consistent candidate accuracies are.

    consistency = 1 - std/mean; confidence = 0.6*consistency + 0.4*mean/100,
    bounded to [5, 95]. No successful candidates yields 0.
    """
    accuracies = np.asarray([c.accuracy for c in candidates if c.success], dtype=float)
    if accuracies.size == 0:
        return 0.0
    mean_accuracy = float(accuracies.mean())
    consistency = 1 - float(accuracies.std()) / mean_accuracy if mean_accuracy > 0 else 0.0
    raw = (consistency * 0.6 + (mean_accuracy / 100) * 0.4) * 100
    return float(min(95.0, max(5.0, raw)))


def _describe(outcome: SearchOutcome, ranges: dict[str, tuple[float, float]], baseline: CandidateResult) -> str:
    parts = [
        f"Coarse search over {len(parameter_combinations(parameter_grid(outcome.model_id)))} combinations",
    ]
    if ranges:
        narrowed = ", ".join(f"{name} {low:g}-{high:g}" for name, (low, high) in sorted(ranges.items()))
        parts.append(f"narrowed to {narrowed}")
    parts.append(
        f"best validation accuracy {outcome.best.accuracy:.1f}% (coarse best {baseline.accuracy:.1f}%)"
        f" on {outcome.validation_size} held-out points"
    )
    return "; ".join(parts) + "."


def heuristic_search(
    values: Sequence[float],
    model_id: str,
    *,
    seasonal_period: int = 12,
    validation_ratio: float = 0.2,
    metric_weights: dict[str, float] | None = None,
    top_fraction: float = TOP_FRACTION,
    progress: ProgressCallback | None = None,
) -> SearchOutcome:
    coarse = grid_search(
        values,
        model_id,
        seasonal_period=seasonal_period,
        validation_ratio=validation_ratio,
        metric_weights=metric_weights,
    )
    ranges = promising_ranges(coarse.candidates, top_fraction)
    refined = grid_search(
        values,
        model_id,
        seasonal_period=seasonal_period,
        validation_ratio=validation_ratio,
        metric_weights=metric_weights,
        grid=focused_grid(ranges),
        progress=progress,
    )
    # never report something worse than the coarse pass already found
    coarse_score, refined_score = composite_scores([coarse.best.metrics, refined.best.metrics], metric_weights)
    if coarse_score < refined_score:
        refined.best = coarse.best

    refined.method = "ai"
    refined.confidence = search_confidence(refined.candidates)
    refined.reasoning = _describe(refined, ranges, coarse.best)
    logger.debug(
        "heuristic_search.completed",
        model_id=model_id,
        confidence=round(refined.confidence, 1),
        best_accuracy=round(refined.best.accuracy, 2),
    )
    return refined
