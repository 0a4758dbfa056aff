"""
Data fingerprints — deterministic content hashes over cleaned SKU history.

A fingerprint keys optimization cache lookups and decides staleness: any
change to a value, an outlier flag or the presence of a note yields a new
fingerprint, so cached parameters computed on the old data stop matching.
The version prefix lets a format change invalidate every persisted entry.
"""

from __future__ import annotations

import hashlib
from typing import Iterable

from ml.observations import ObservationPoint, group_by_sku

FINGERPRINT_VERSION = "v3"
EMPTY_FINGERPRINT = "empty"
VALUE_DECIMALS = 3


def _format_value(value: float) -> str:
    # +0.0 folds -0.0 into 0.0 so the two never hash differently
    return f"{round(float(value), VALUE_DECIMALS) + 0.0:.{VALUE_DECIMALS}f}"


def _serialize_point(point: ObservationPoint) -> str:
    outlier = "1" if point.is_outlier else "0"
    note = "1" if point.note else "0"
    return f"{point.date}:{_format_value(point.value)}:{outlier}:{note}"


def fingerprint(points: Iterable[ObservationPoint], sku: str | None = None) -> str:
    """
    Fingerprint one SKU's observation sequence.

    Order of the input collection does not matter. When ``sku`` is given the
    points are filtered to it first; otherwise all points must share a SKU.
    """
    selected = [p for p in points if sku is None or p.sku == sku]
    if not selected:
        return EMPTY_FINGERPRINT
    skus = {p.sku for p in selected}
    if len(skus) > 1:
        raise ValueError(f"fingerprint expects a single SKU, got {len(skus)}")

    serialized = sorted(_serialize_point(p) for p in selected)
    digest = hashlib.sha256("|".join(serialized).encode("utf-8")).hexdigest()
    return f"{FINGERPRINT_VERSION}-{len(serialized)}-{digest}"


def is_current_version(data_hash: str | None) -> bool:
    return bool(data_hash) and data_hash.startswith(f"{FINGERPRINT_VERSION}-")


def fingerprints_by_sku(points: Iterable[ObservationPoint]) -> dict[str, str]:
    return {sku: fingerprint(group) for sku, group in group_by_sku(points).items()}


def dataset_fingerprint(points: Iterable[ObservationPoint]) -> str:
    """Fingerprint of a whole dataset: hash over every SKU fingerprint, sorted by SKU."""
    per_sku = fingerprints_by_sku(points)
    if not per_sku:
        return EMPTY_FINGERPRINT
    digest = hashlib.sha256()
    for sku, value in per_sku.items():
        digest.update(f"{sku}={value};".encode("utf-8"))
    return f"{FINGERPRINT_VERSION}-ds{len(per_sku)}-{digest.hexdigest()}"
