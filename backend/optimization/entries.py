"""
Cache entry types.

The persisted blob uses the field names below (``dataHash``,
``expectedAccuracy``); ``from_dict`` tolerates extra keys and raises
ValueError for anything structurally unusable.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any

METHODS = ("ai", "grid", "manual")
OPTIMIZED_METHODS = ("ai", "grid")


def validate_method(method: str) -> str:
    if method not in METHODS:
        raise ValueError(f"Unknown optimization method: {method!r}")
    return method


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    number = float(value)
    return number if math.isfinite(number) else None


@dataclass(frozen=True)
class OptimizedParameterSet:
    parameters: dict[str, float]
    timestamp: float
    data_hash: str
    method: str
    confidence: float | None = None
    reasoning: str | None = None
    expected_accuracy: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "parameters": dict(self.parameters),
            "timestamp": self.timestamp,
            "dataHash": self.data_hash,
            "method": self.method,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "expectedAccuracy": self.expected_accuracy,
        }

    @classmethod
    def from_dict(cls, payload: Any, method: str | None = None) -> "OptimizedParameterSet":
        if not isinstance(payload, dict):
            raise ValueError("parameter set must be an object")
        parameters = payload.get("parameters")
        if not isinstance(parameters, dict):
            raise ValueError("parameters must be an object")
        data_hash = payload.get("dataHash")
        if not isinstance(data_hash, str) or not data_hash:
            raise ValueError("dataHash missing")
        timestamp = float(payload["timestamp"])
        if not math.isfinite(timestamp):
            raise ValueError("timestamp must be finite")
        reasoning = payload.get("reasoning")
        return cls(
            parameters={str(k): float(v) for k, v in parameters.items()},
            timestamp=timestamp,
            data_hash=data_hash,
            method=validate_method(method or payload.get("method")),
            confidence=_optional_float(payload.get("confidence")),
            reasoning=str(reasoning) if reasoning is not None else None,
            expected_accuracy=_optional_float(payload.get("expectedAccuracy")),
        )

    def as_manual(self, timestamp: float) -> "OptimizedParameterSet":
        """Copy of the parameters only, without optimization metadata."""
        return OptimizedParameterSet(
            parameters=dict(self.parameters),
            timestamp=timestamp,
            data_hash=self.data_hash,
            method="manual",
        )


@dataclass
class CacheEntry:
    ai: OptimizedParameterSet | None = None
    grid: OptimizedParameterSet | None = None
    manual: OptimizedParameterSet | None = None
    selected: str | None = None

    def slot(self, method: str) -> OptimizedParameterSet | None:
        return getattr(self, validate_method(method))

    def put(self, method: str, parameter_set: OptimizedParameterSet | None) -> None:
        setattr(self, validate_method(method), parameter_set)

    def is_empty(self) -> bool:
        return self.selected is None and all(self.slot(m) is None for m in METHODS)

    def copy(self) -> "CacheEntry":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for method in METHODS:
            parameter_set = self.slot(method)
            if parameter_set is not None:
                payload[method] = parameter_set.to_dict()
        if self.selected is not None:
            payload["selected"] = self.selected
        return payload
