"""
Model Registry — catalog of forecast models and the dispatch into the model library.

Each model declares its default parameters; a model whose defaults are empty
has nothing to tune and is never queued for optimization.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Sequence

from ml import forecast_models


@dataclass(frozen=True)
class ModelConfig:
    id: str
    name: str
    description: str
    enabled: bool = True
    parameters: dict[str, float] = field(default_factory=dict)
    is_seasonal: bool = False
    min_observations: int = 1


_FORECASTERS: dict[str, Callable[..., list[float]]] = {
    "moving_average": forecast_models.moving_average,
    "simple_exponential_smoothing": forecast_models.simple_exponential_smoothing,
    "double_exponential_smoothing": forecast_models.double_exponential_smoothing,
    "linear_trend": forecast_models.linear_trend,
    "seasonal_moving_average": forecast_models.seasonal_moving_average,
    "holt_winters": forecast_models.holt_winters,
    "seasonal_naive": forecast_models.seasonal_naive,
}

DEFAULT_MODELS: tuple[ModelConfig, ...] = (
    ModelConfig(
        id="moving_average",
        name="Simple Moving Average",
        description="Average of the last N data points",
        parameters={"window": 3},
        min_observations=1,
    ),
    ModelConfig(
        id="simple_exponential_smoothing",
        name="Exponential Smoothing",
        description="Weights recent observations more heavily while smoothing fluctuations",
        parameters={"alpha": 0.3},
        min_observations=1,
    ),
    ModelConfig(
        id="double_exponential_smoothing",
        name="Holt Linear Trend",
        description="Exponential smoothing with an additive trend term",
        parameters={"alpha": 0.3, "beta": 0.1},
        min_observations=2,
    ),
    ModelConfig(
        id="linear_trend",
        name="Linear Trend",
        description="Least-squares line over the history, extrapolated",
        parameters={},
        min_observations=2,
    ),
    ModelConfig(
        id="seasonal_moving_average",
        name="Seasonal Moving Average",
        description="Moving average scaled by a seasonal index",
        parameters={"window": 3},
        is_seasonal=True,
        min_observations=1,
    ),
    ModelConfig(
        id="holt_winters",
        name="Holt-Winters (Triple Exponential)",
        description="Level, trend and multiplicative seasonality",
        parameters={"alpha": 0.3, "beta": 0.1, "gamma": 0.1},
        is_seasonal=True,
        min_observations=2,
    ),
    ModelConfig(
        id="seasonal_naive",
        name="Seasonal Naive",
        description="Repeats the value from the same period of the previous season",
        parameters={},
        is_seasonal=True,
        min_observations=1,
    ),
)

INTEGER_PARAMETERS = frozenset({"window"})


def default_models() -> list[ModelConfig]:
    return list(DEFAULT_MODELS)


def get_model(model_id: str, models: Sequence[ModelConfig] | None = None) -> ModelConfig:
    for model in models if models is not None else DEFAULT_MODELS:
        if model.id == model_id:
            return model
    raise ValueError(f"Unknown model id: {model_id}")


def with_parameters(model: ModelConfig, parameters: dict[str, float]) -> ModelConfig:
    merged = {**model.parameters, **parameters}
    return replace(model, parameters=merged)


def has_tunable_parameters(model: ModelConfig) -> bool:
    return bool(model.parameters)


def coerce_parameters(model_id: str, parameters: dict[str, Any]) -> dict[str, float]:
    """Keep only parameters the model declares; windows are whole periods."""
    declared = get_model(model_id).parameters
    coerced: dict[str, float] = {}
    for name in declared:
        if name not in parameters or parameters[name] is None:
            continue
        value = float(parameters[name])
        coerced[name] = int(round(value)) if name in INTEGER_PARAMETERS else value
    return coerced


def run_forecast(
    model_id: str,
    history: Sequence[float],
    periods: int,
    parameters: dict[str, Any] | None = None,
    seasonal_period: int = 12,
) -> list[float]:
    """
    Forecast ``periods`` steps with a catalog model.

    Missing parameters fall back to the model's defaults; unknown ones are
    ignored. Seasonal models receive ``seasonal_period``.
    """
    model = get_model(model_id)
    kwargs: dict[str, Any] = {**model.parameters, **coerce_parameters(model_id, parameters or {})}
    if model.is_seasonal:
        kwargs["seasonal_period"] = seasonal_period
    return _FORECASTERS[model_id](list(history), periods, **kwargs)
