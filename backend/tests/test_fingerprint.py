import random
from dataclasses import replace

import pandas as pd
import pytest

from ml.fingerprint import (
    EMPTY_FINGERPRINT,
    FINGERPRINT_VERSION,
    dataset_fingerprint,
    fingerprint,
    fingerprints_by_sku,
    is_current_version,
)
from ml.observations import ObservationPoint, group_by_sku, history_values, observations_from_frame


class TestFingerprint:
    def test_permutation_does_not_change_fingerprint(self, make_points):
        points = make_points("SKU-1", [3, 1, 4, 1, 5, 9, 2, 6])
        shuffled = list(points)
        random.Random(7).shuffle(shuffled)
        assert fingerprint(points) == fingerprint(shuffled)

    def test_value_change_changes_fingerprint(self, make_points):
        points = make_points("SKU-1", [3, 1, 4, 1, 5])
        changed = list(points)
        changed[2] = replace(changed[2], value=4.5)
        assert fingerprint(points) != fingerprint(changed)

    def test_outlier_flag_changes_fingerprint(self, make_points):
        points = make_points("SKU-1", [3, 1, 4, 1, 5])
        flagged = list(points)
        flagged[0] = replace(flagged[0], is_outlier=True)
        assert fingerprint(points) != fingerprint(flagged)

    def test_note_presence_changes_fingerprint(self, make_points):
        points = make_points("SKU-1", [3, 1, 4, 1, 5])
        noted = list(points)
        noted[4] = replace(noted[4], note="promo week")
        assert fingerprint(points) != fingerprint(noted)

    def test_note_text_does_not_matter(self, make_points):
        points = make_points("SKU-1", [3, 1, 4])
        a = [replace(points[0], note="promo"), *points[1:]]
        b = [replace(points[0], note="stock-out"), *points[1:]]
        assert fingerprint(a) == fingerprint(b)

    def test_sub_precision_jitter_is_ignored(self, make_points):
        points = make_points("SKU-1", [1.0, 2.0])
        jittered = [replace(points[0], value=1.0000001), points[1]]
        assert fingerprint(points) == fingerprint(jittered)

    def test_values_are_compared_to_three_decimals(self, make_points):
        points = make_points("SKU-1", [1.0, 2.0])
        assert fingerprint(points) == fingerprint([replace(points[0], value=1.0004), points[1]])
        assert fingerprint(points) != fingerprint([replace(points[0], value=1.001), points[1]])

    def test_format(self, make_points):
        value = fingerprint(make_points("SKU-1", [1, 2, 3]))
        version, count, digest = value.split("-")
        assert version == FINGERPRINT_VERSION
        assert count == "3"
        assert len(digest) == 64
        assert is_current_version(value)

    def test_empty_input_is_sentinel(self):
        assert fingerprint([]) == EMPTY_FINGERPRINT
        assert not is_current_version(EMPTY_FINGERPRINT)

    def test_filters_to_requested_sku(self, make_points):
        a = make_points("SKU-A", [1, 2, 3])
        b = make_points("SKU-B", [7, 8])
        assert fingerprint(a + b, sku="SKU-A") == fingerprint(a)
        assert fingerprint(a + b, sku="SKU-Z") == EMPTY_FINGERPRINT

    def test_mixed_skus_without_filter_rejected(self, make_points):
        with pytest.raises(ValueError, match="single SKU"):
            fingerprint(make_points("SKU-A", [1]) + make_points("SKU-B", [1]))

    def test_older_version_is_not_current(self):
        assert not is_current_version("v2-3-abc")
        assert not is_current_version(None)


class TestDatasetFingerprint:
    def test_per_sku_map(self, sample_points, make_points):
        per_sku = fingerprints_by_sku(sample_points)
        assert list(per_sku) == ["SKU-A", "SKU-B", "SKU-C"]
        assert per_sku["SKU-C"] == fingerprint(make_points("SKU-C", [5, 6]))

    def test_changes_when_any_sku_changes(self, sample_points):
        before = dataset_fingerprint(sample_points)
        changed = [replace(p, value=p.value + 1) if p.sku == "SKU-B" and p.date == "2024-01-01" else p for p in sample_points]
        assert dataset_fingerprint(changed) != before
        assert dataset_fingerprint(list(reversed(sample_points))) == before

    def test_empty_dataset(self):
        assert dataset_fingerprint([]) == EMPTY_FINGERPRINT


class TestObservations:
    def test_from_frame_normalizes_flags_and_notes(self):
        df = pd.DataFrame(
            {
                "sku": ["A", "A", "A"],
                "date": pd.to_datetime(["2024-02-01", "2024-01-01", "2024-03-01"]),
                "value": ["10", "bad", 12],
                "is_outlier": [True, None, float("nan")],
                "note": ["  ", None, "promo"],
            }
        )
        points = observations_from_frame(df)
        assert len(points) == 2
        by_date = {p.date: p for p in points}
        assert by_date["2024-02-01"].is_outlier is True
        assert by_date["2024-02-01"].note is None
        assert by_date["2024-03-01"].is_outlier is False
        assert by_date["2024-03-01"].note == "promo"

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="value"):
            observations_from_frame(pd.DataFrame({"sku": ["A"], "date": ["2024-01-01"]}))

    def test_grouping_sorts_by_date(self):
        points = [
            ObservationPoint(sku="B", date="2024-02-01", value=2),
            ObservationPoint(sku="A", date="2024-03-01", value=3),
            ObservationPoint(sku="A", date="2024-01-01", value=1),
        ]
        grouped = group_by_sku(points)
        assert list(grouped) == ["A", "B"]
        assert history_values(grouped["A"]) == [1.0, 3.0]
