"""Additive seasonal decomposition used for model diagnostics."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np


@dataclass
class SeasonalDecomposition:
    trend: list[float]
    seasonal: list[float]
    residual: list[float]
    seasonal_pattern: list[float] = field(default_factory=list)


def _centered_weights(seasonal_period: int) -> np.ndarray:
    """Weights of a centered MA; even periods use a 2xm average with half weight on both ends."""
    if seasonal_period % 2:
        return np.full(seasonal_period, 1.0 / seasonal_period)
    weights = np.full(seasonal_period + 1, 1.0 / seasonal_period)
    weights[0] = weights[-1] = 0.5 / seasonal_period
    return weights


def seasonal_decomposition(values: Sequence[float], seasonal_period: int) -> SeasonalDecomposition:
    """
    Split a series into trend + seasonal + residual.

    Trend is a centered moving average of width ``seasonal_period`` (a 2xm
    average for even periods, so it stays centered); edges where the window
    does not fit keep the observed value. The seasonal
    pattern is the mean detrended value per phase. Fewer than two seasons
    of data return the series as trend with zero seasonal/residual parts.
    """
    data = [float(v) for v in values]
    n = len(data)
    seasonal_period = max(1, int(seasonal_period))
    if n < 2 * seasonal_period:
        return SeasonalDecomposition(
            trend=list(data),
            seasonal=[0.0] * n,
            residual=[0.0] * n,
            seasonal_pattern=[0.0] * seasonal_period,
        )

    half = seasonal_period // 2
    weights = _centered_weights(seasonal_period)
    trend = []
    for idx in range(n):
        if idx < half or idx >= n - half:
            trend.append(data[idx])
        else:
            window = np.asarray(data[idx - half : idx + half + 1])
            trend.append(float(np.dot(window, weights)))

    detrended = np.asarray(data) - np.asarray(trend)
    phases = np.arange(n) % seasonal_period
    pattern = [
        float(detrended[phases == phase].mean()) if np.any(phases == phase) else 0.0
        for phase in range(seasonal_period)
    ]
    seasonal = [pattern[idx % seasonal_period] for idx in range(n)]
    residual = [data[idx] - trend[idx] - seasonal[idx] for idx in range(n)]
    return SeasonalDecomposition(trend=trend, seasonal=seasonal, residual=residual, seasonal_pattern=pattern)
