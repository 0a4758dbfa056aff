"""Canonical forecast accuracy metrics used by grid search, heuristic search and job scoring."""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd

DEFAULT_METRIC_WEIGHTS: dict[str, float] = {"mape": 0.4, "rmse": 0.3, "mae": 0.2, "accuracy": 0.1}


def _to_series(values: Any) -> pd.Series:
    series = pd.Series(values, dtype="float64").reset_index(drop=True)
    return pd.to_numeric(series, errors="coerce").fillna(0.0)


def mae(y_true: Any, y_pred: Any) -> float:
    actual = _to_series(y_true)
    pred = _to_series(y_pred)
    if actual.empty:
        return 0.0
    return float(np.abs(pred - actual).mean())


def rmse(y_true: Any, y_pred: Any) -> float:
    actual = _to_series(y_true)
    pred = _to_series(y_pred)
    if actual.empty:
        return 0.0
    return float(np.sqrt(((pred - actual) ** 2).mean()))


def mape(y_true: Any, y_pred: Any) -> float:
    """Mean absolute percentage error in percent, over non-zero actuals only."""
    actual = _to_series(y_true)
    pred = _to_series(y_pred)
    mask = actual != 0
    if int(mask.sum()) == 0:
        return 0.0
    return float((np.abs((actual[mask] - pred[mask]) / actual[mask])).mean() * 100.0)


def accuracy(y_true: Any, y_pred: Any) -> float:
    return max(0.0, 100.0 - mape(y_true, y_pred))


def compute_forecast_metrics(y_true: Any, y_pred: Any) -> dict[str, float]:
    return {
        "mape": mape(y_true, y_pred),
        "rmse": rmse(y_true, y_pred),
        "mae": mae(y_true, y_pred),
        "accuracy": accuracy(y_true, y_pred),
    }


def resolve_metric_weights(weights: dict[str, float] | None) -> dict[str, float]:
    """Fill unset weights with the defaults; unknown metric names are rejected."""
    if not weights:
        return dict(DEFAULT_METRIC_WEIGHTS)
    unknown = set(weights) - set(DEFAULT_METRIC_WEIGHTS)
    if unknown:
        raise ValueError(f"Unknown metric weight(s): {', '.join(sorted(unknown))}")
    return {name: float(weights.get(name, default)) for name, default in DEFAULT_METRIC_WEIGHTS.items()}


def composite_scores(metrics: list[dict[str, float]], weights: dict[str, float] | None = None) -> list[float]:
    """
    Weighted score per candidate, lower is better.

    Each metric is min-max normalized across the candidates so RMSE/MAE (in
    demand units) and MAPE/accuracy (in percent) are comparable. Accuracy is
    inverted so that higher accuracy lowers the score.
    """
    if not metrics:
        return []
    resolved = resolve_metric_weights(weights)
    frame = pd.DataFrame(metrics, columns=list(DEFAULT_METRIC_WEIGHTS)).astype("float64")
    frame = frame.replace([np.inf, -np.inf], np.nan)
    frame["accuracy"] = 100.0 - frame["accuracy"]

    score = pd.Series(0.0, index=frame.index)
    for name, weight in resolved.items():
        column = frame[name]
        spread = column.max() - column.min()
        if pd.isna(spread) or spread == 0:
            normalized = pd.Series(0.0, index=frame.index)
        else:
            normalized = (column - column.min()) / spread
        score = score + weight * normalized.fillna(1.0)
    return [float(v) for v in score]
