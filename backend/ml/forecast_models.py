"""
Statistical Forecast Model Library

Pure functions producing N-step-ahead predictions from a value history.
Every function returns exactly ``periods`` values, each floored at 0
(negative demand is not a valid business forecast).

Underflow behaviour (history shorter than a model expects):
  - empty history                → all-zero forecast, every model
  - moving averages, window > n  → average over the whole history
  - double exponential, n == 1   → flat line at the single value
  - seasonal naive, n < period   → phases never observed reuse the last value
  - holt_winters, n < 2*period   → simple exponential smoothing with alpha
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

SEASONAL_FACTOR_MIN = 0.1
SEASONAL_FACTOR_MAX = 10.0


def _floor(values: Sequence[float]) -> list[float]:
    return [max(0.0, float(v)) for v in values]


def _zeros(periods: int) -> list[float]:
    return [0.0] * max(periods, 0)


def moving_average(history: Sequence[float], periods: int, window: int = 3) -> list[float]:
    """Mean of the last ``window`` values, rolled forward over its own predictions."""
    if not history or periods <= 0:
        return _zeros(periods)
    window = max(1, int(window))
    extended = [float(v) for v in history]
    predictions = []
    for _ in range(periods):
        prediction = float(np.mean(extended[-window:]))
        predictions.append(prediction)
        extended.append(prediction)
    return _floor(predictions)


def _smoothed_level(history: Sequence[float], alpha: float) -> float:
    level = float(history[0])
    for value in history[1:]:
        level = alpha * float(value) + (1 - alpha) * level
    return level


def simple_exponential_smoothing(history: Sequence[float], periods: int, alpha: float = 0.3) -> list[float]:
    """Last smoothed level, flat-lined across the horizon."""
    if not history or periods <= 0:
        return _zeros(periods)
    level = _smoothed_level(history, alpha)
    return _floor([level] * periods)


def double_exponential_smoothing(
    history: Sequence[float],
    periods: int,
    alpha: float = 0.3,
    beta: float = 0.1,
) -> list[float]:
    """Holt's linear method: level + h * trend."""
    if not history or periods <= 0:
        return _zeros(periods)
    level = float(history[0])
    trend = float(history[1]) - float(history[0]) if len(history) > 1 else 0.0
    for value in history[1:]:
        prev_level = level
        level = alpha * float(value) + (1 - alpha) * (level + trend)
        trend = beta * (level - prev_level) + (1 - beta) * trend
    return _floor([level + trend * (step + 1) for step in range(periods)])


def linear_trend(history: Sequence[float], periods: int) -> list[float]:
    """Least-squares line over the index, extrapolated past the last observation."""
    if not history or periods <= 0:
        return _zeros(periods)
    n = len(history)
    if n == 1:
        return _floor([history[0]] * periods)
    x = np.arange(n, dtype=float)
    slope, intercept = np.polyfit(x, np.asarray(history, dtype=float), 1)
    return _floor([intercept + slope * (n + step) for step in range(periods)])


def seasonal_naive(history: Sequence[float], periods: int, seasonal_period: int = 12) -> list[float]:
    """Repeat the most recent historical value from the same seasonal phase."""
    if not history or periods <= 0:
        return _zeros(periods)
    seasonal_period = max(1, int(seasonal_period))
    n = len(history)
    predictions = []
    for step in range(periods):
        phase = (n + step) % seasonal_period
        value = float(history[-1])
        for idx in range(n - 1, -1, -1):
            if idx % seasonal_period == phase:
                value = float(history[idx])
                break
        predictions.append(value)
    return _floor(predictions)


def seasonal_moving_average(
    history: Sequence[float],
    periods: int,
    window: int = 3,
    seasonal_period: int = 12,
) -> list[float]:
    """
    Rolling average of recent values scaled by a seasonal index.

    The index for a phase is (phase average) / (overall average); an all-zero
    history uses an index of 1.
    """
    if not history or periods <= 0:
        return _zeros(periods)
    window = max(1, int(window))
    seasonal_period = max(1, int(seasonal_period))
    values = [float(v) for v in history]
    n = len(values)
    overall_avg = float(np.mean(values))
    extended = list(values)
    predictions = []
    for step in range(periods):
        phase = (n + step) % seasonal_period
        phase_values = [v for idx, v in enumerate(values) if idx % seasonal_period == phase]
        phase_avg = float(np.mean(phase_values)) if phase_values else 0.0
        base_avg = float(np.mean(extended[-window:]))
        factor = phase_avg / overall_avg if overall_avg > 0 else 1.0
        prediction = max(0.0, base_avg * factor)
        predictions.append(prediction)
        extended.append(prediction)
    return predictions


def holt_winters(
    history: Sequence[float],
    periods: int,
    seasonal_period: int = 12,
    alpha: float = 0.3,
    beta: float = 0.1,
    gamma: float = 0.1,
) -> list[float]:
    """
    Multiplicative Holt-Winters (triple exponential smoothing).

    Needs at least two full seasons; shorter histories degrade to simple
    exponential smoothing. A zero first-season mean gives every phase a
    seasonal factor of 1; factors are kept within [0.1, 10].
    """
    if not history or periods <= 0:
        return _zeros(periods)
    seasonal_period = max(1, int(seasonal_period))
    values = [float(v) for v in history]
    n = len(values)
    if n < 2 * seasonal_period:
        return simple_exponential_smoothing(values, periods, alpha=alpha)

    first_season_avg = float(np.mean(values[:seasonal_period]))
    second_season_avg = float(np.mean(values[seasonal_period : 2 * seasonal_period]))
    level = first_season_avg
    trend = (second_season_avg - first_season_avg) / seasonal_period
    if first_season_avg > 0:
        seasonal = [
            min(SEASONAL_FACTOR_MAX, max(SEASONAL_FACTOR_MIN, v / first_season_avg))
            for v in values[:seasonal_period]
        ]
    else:
        seasonal = [1.0] * seasonal_period

    for idx in range(seasonal_period, n):
        phase = idx % seasonal_period
        prev_level = level
        factor = seasonal[phase]
        deseasonalized = values[idx] / factor if factor > 0 else values[idx]
        level = alpha * deseasonalized + (1 - alpha) * (prev_level + trend)
        trend = beta * (level - prev_level) + (1 - beta) * trend
        if level > 0:
            updated = gamma * (values[idx] / level) + (1 - gamma) * factor
            seasonal[phase] = min(SEASONAL_FACTOR_MAX, max(SEASONAL_FACTOR_MIN, updated))

    predictions = []
    for step in range(periods):
        phase = (n + step) % seasonal_period
        forecast = (level + (step + 1) * trend) * seasonal[phase]
        if not math.isfinite(forecast):
            forecast = values[-1]
        predictions.append(forecast)
    return _floor(predictions)
