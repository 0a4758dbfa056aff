"""Cleaned sales observations as produced by the import/cleaning pipeline."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable

import pandas as pd


@dataclass(frozen=True)
class ObservationPoint:
    sku: str
    date: str  # ISO-8601 'YYYY-MM-DD'
    value: float
    is_outlier: bool = False
    note: str | None = None


def _iso_date(value: str | date | datetime | pd.Timestamp) -> str:
    if isinstance(value, str):
        return value
    return pd.Timestamp(value).date().isoformat()


def observations_from_frame(
    df: pd.DataFrame,
    *,
    sku_col: str = "sku",
    date_col: str = "date",
    value_col: str = "value",
    outlier_col: str = "is_outlier",
    note_col: str = "note",
) -> list[ObservationPoint]:
    """
    Convert a cleaned frame into observation points.

    Missing outlier/note columns are treated as "not flagged" / "no note".
    Rows with an unparseable value are skipped.
    """
    if df.empty:
        return []
    missing = [col for col in (sku_col, date_col, value_col) if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {', '.join(missing)}")

    out = df.copy()
    out[value_col] = pd.to_numeric(out[value_col], errors="coerce")
    out = out.dropna(subset=[value_col])

    points = []
    for row in out.to_dict(orient="records"):
        note = row.get(note_col)
        if note is not None and (not isinstance(note, str) or not note.strip()):
            note = None
        outlier = row.get(outlier_col)
        points.append(
            ObservationPoint(
                sku=str(row[sku_col]),
                date=_iso_date(row[date_col]),
                value=float(row[value_col]),
                is_outlier=False if outlier is None or pd.isna(outlier) else bool(outlier),
                note=note,
            )
        )
    return points


def group_by_sku(points: Iterable[ObservationPoint]) -> dict[str, list[ObservationPoint]]:
    """Group points per SKU, each group sorted by date ascending; SKUs in sorted order."""
    grouped: dict[str, list[ObservationPoint]] = defaultdict(list)
    for point in points:
        grouped[point.sku].append(point)
    return {sku: sorted(grouped[sku], key=lambda p: p.date) for sku in sorted(grouped)}


def history_values(points: Iterable[ObservationPoint]) -> list[float]:
    return [float(p.value) for p in sorted(points, key=lambda p: p.date)]
