"""
Optimization Cache Store

Holds, per (SKU, model), up to three parameter sets (ai / grid / manual) and
the explicitly selected method. The whole cache is one JSON document in a
scoped key-value store: ``init()`` loads it, dropping anything malformed,
from an older fingerprint version or past expiry; every mutation is written
back when ``autoflush`` is on. Storage failures never reach callers.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from ml.fingerprint import is_current_version
from optimization.entries import METHODS, CacheEntry, OptimizedParameterSet, validate_method
from optimization.errors import CacheStorageError
from optimization.selection import is_stale, resolve_parameter_set
from optimization.storage import KeyValueStore, scoped_key

logger = structlog.get_logger()

CACHE_KEY = "forecast_optimization_cache"
DEFAULT_EXPIRY_HOURS = 24


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "skipped": self.skipped}


class OptimizationCacheStore:
    def __init__(
        self,
        backend: KeyValueStore,
        *,
        scope: str = "default",
        storage_key: str = CACHE_KEY,
        expiry_hours: float = DEFAULT_EXPIRY_HOURS,
        autoflush: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.key = scoped_key(scope, storage_key)
        self.expiry_seconds = float(expiry_hours) * 3600.0
        self.autoflush = autoflush
        self._clock = clock
        self._entries: dict[str, dict[str, CacheEntry]] = {}
        self.stats = CacheStats()

    def now(self) -> float:
        return float(self._clock())

    # ── Persistence ──────────────────────────────────────────────────────

    def init(self) -> None:
        """Load the persisted blob, replacing in-memory state."""
        self._entries = {}
        try:
            raw = self.backend.get(self.key)
        except CacheStorageError as exc:
            logger.warning("optimization_cache.load_failed", key=self.key, error=str(exc))
            return
        if raw is None:
            logger.debug("optimization_cache.empty", key=self.key)
            return
        try:
            document = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("optimization_cache.corrupt", key=self.key, error=str(exc))
            return
        if not isinstance(document, dict):
            logger.warning("optimization_cache.corrupt", key=self.key, error="top-level value is not an object")
            return

        kept = dropped = 0
        now = self.now()
        for sku, models in document.items():
            if not isinstance(models, dict):
                dropped += 1
                continue
            for model_id, payload in models.items():
                entry, slots_dropped = self._load_entry(payload, now)
                dropped += slots_dropped
                if entry is None or entry.is_empty():
                    continue
                self._entries.setdefault(str(sku), {})[str(model_id)] = entry
                kept += 1
        logger.info("optimization_cache.loaded", key=self.key, entries=kept, dropped=dropped)

    def _load_entry(self, payload: Any, now: float) -> tuple[CacheEntry | None, int]:
        if not isinstance(payload, dict):
            return None, 1
        entry = CacheEntry()
        dropped = 0
        for method in METHODS:
            if payload.get(method) is None:
                continue
            try:
                parameter_set = OptimizedParameterSet.from_dict(payload[method], method=method)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("optimization_cache.entry_dropped", method=method, error=str(exc))
                dropped += 1
                continue
            if not is_current_version(parameter_set.data_hash) or now - parameter_set.timestamp > self.expiry_seconds:
                dropped += 1
                continue
            entry.put(method, parameter_set)
        selected = payload.get("selected")
        if selected in METHODS:
            entry.selected = selected
        return entry, dropped

    def flush(self) -> None:
        """Write the whole cache back; last write wins."""
        document = {
            sku: {model_id: entry.to_dict() for model_id, entry in models.items()}
            for sku, models in self._entries.items()
        }
        try:
            self.backend.set(self.key, json.dumps(document, sort_keys=True))
        except CacheStorageError as exc:
            logger.error("optimization_cache.flush_failed", key=self.key, error=str(exc))

    def _mutated(self) -> None:
        if self.autoflush:
            self.flush()

    # ── Reads ────────────────────────────────────────────────────────────

    def entry(self, sku: str, model_id: str) -> CacheEntry | None:
        entry = self._entries.get(sku, {}).get(model_id)
        return entry.copy() if entry is not None else None

    def get(
        self,
        sku: str,
        model_id: str,
        method: str | None = None,
        *,
        data_hash: str,
    ) -> OptimizedParameterSet | None:
        """
        A usable parameter set for the pair, or None.

        With ``method`` only that slot is considered; without it the selected
        method is tried first, then ai, grid and manual.
        """
        entry = self._entries.get(sku, {}).get(model_id)
        if method is not None:
            candidate = entry.slot(validate_method(method)) if entry else None
            stale = is_stale(candidate, data_hash, now=self.now(), expiry_seconds=self.expiry_seconds)
            result = None if stale else candidate
        else:
            result = resolve_parameter_set(entry, data_hash, now=self.now(), expiry_seconds=self.expiry_seconds)
        if result is None:
            self.stats.misses += 1
        else:
            self.stats.hits += 1
        return result

    def has_valid(self, sku: str, model_id: str, method: str, data_hash: str) -> bool:
        """Like ``get`` with a method, without touching hit/miss counters."""
        entry = self._entries.get(sku, {}).get(model_id)
        candidate = entry.slot(validate_method(method)) if entry else None
        return not is_stale(candidate, data_hash, now=self.now(), expiry_seconds=self.expiry_seconds)

    def skus(self) -> list[str]:
        return sorted(self._entries)

    def export_rows(self, sku: str | None = None) -> list[dict[str, Any]]:
        """Flat rows of every cached parameter set, sorted by sku, model, method."""
        rows = []
        for entry_sku in sorted(self._entries):
            if sku is not None and entry_sku != sku:
                continue
            for model_id in sorted(self._entries[entry_sku]):
                entry = self._entries[entry_sku][model_id]
                for method in METHODS:
                    parameter_set = entry.slot(method)
                    if parameter_set is None:
                        continue
                    rows.append(
                        {
                            "sku": entry_sku,
                            "model_id": model_id,
                            "method": method,
                            "parameters": dict(parameter_set.parameters),
                            "data_hash": parameter_set.data_hash,
                            "timestamp": parameter_set.timestamp,
                            "confidence": parameter_set.confidence,
                            "expected_accuracy": parameter_set.expected_accuracy,
                            "selected": entry.selected == method,
                        }
                    )
        return rows

    # ── Writes ───────────────────────────────────────────────────────────

    def _entry_for_write(self, sku: str, model_id: str) -> CacheEntry:
        return self._entries.setdefault(sku, {}).setdefault(model_id, CacheEntry())

    def set(self, sku: str, model_id: str, method: str, parameter_set: OptimizedParameterSet) -> None:
        """Upsert one slot. The selected method is left as it is."""
        validate_method(method)
        if parameter_set.method != method:
            raise ValueError(f"Parameter set method {parameter_set.method!r} does not match slot {method!r}")
        if not is_current_version(parameter_set.data_hash):
            raise ValueError(f"Refusing to cache parameters for fingerprint {parameter_set.data_hash!r}")
        self._entry_for_write(sku, model_id).put(method, parameter_set)
        logger.debug("optimization_cache.set", sku=sku, model_id=model_id, method=method)
        self._mutated()

    def set_selected(self, sku: str, model_id: str, method: str | None) -> None:
        """Record an explicit selection; ``None`` returns the pair to best-available resolution."""
        if method is not None:
            validate_method(method)
        entry = self._entry_for_write(sku, model_id)
        entry.selected = method
        if entry.is_empty():
            del self._entries[sku][model_id]
            if not self._entries[sku]:
                del self._entries[sku]
        self._mutated()

    def clear(self, sku: str | None = None) -> None:
        if sku is None:
            self._entries.clear()
        else:
            self._entries.pop(sku, None)
        logger.info("optimization_cache.cleared", sku=sku)
        self._mutated()

    def record_skipped(self) -> None:
        self.stats.skipped += 1
