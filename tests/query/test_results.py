"""Tests for result sets and wire serialization."""

import json
import math
from datetime import date, datetime
from decimal import Decimal

import pytest

from cortex.query.results import Degradation, DegradedReason, ResultSet, to_json_safe


class TestToJsonSafe:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (None, None),
            (True, True),
            (12, 12),
            (2**60, str(2**60)),
            (1.5, 1.5),
            (math.nan, None),
            (math.inf, None),
            (Decimal("2.50"), 2.5),
            (date(2024, 1, 2), "2024-01-02"),
            (datetime(2024, 1, 2, 3, 4, 5), "2024-01-02T03:04:05"),
            ((1, "a"), [1, "a"]),
        ],
    )
    def test_values(self, value, expected):
        assert to_json_safe(value) == expected


class TestResultSet:
    """Tests for ResultSet."""

    def test_from_tuples(self):
        result = ResultSet.from_tuples(["a", "b"], [(1, 2), (3, 4)])
        assert result.rows == [{"a": 1, "b": 2}, {"a": 3, "b": 4}]
        assert len(result) == 2
        assert not result.fallback

    def test_wire_shape(self):
        result = ResultSet.from_tuples(["day", "total"], [(date(2024, 1, 1), Decimal("9.5"))])
        wire = result.to_wire()
        assert wire == {
            "columns": ["day", "total"],
            "rows": [{"day": "2024-01-01", "total": 9.5}],
            "fallback": False,
        }
        json.dumps(wire)

    def test_wire_degraded(self):
        result = ResultSet(
            columns=["a"],
            rows=[{"a": 1}],
            degraded=Degradation(reason=DegradedReason.TIMEOUT, detail="slow"),
            warnings=["w"],
        )
        wire = result.to_wire()
        assert wire["fallback"] is True
        assert wire["degraded_reason"] == "timeout"
        assert wire["degraded_detail"] == "slow"
        assert wire["warnings"] == ["w"]

    def test_chart_points_pick_numeric_column(self):
        result = ResultSet.from_tuples(
            ["product", "note", "revenue"],
            [("Lamp", "x", "$1,500"), ("Rug", "y", "n/a")],
        )
        assert result.to_chart_points() == [
            {"name": "Lamp", "value": 1500.0},
            {"name": "Rug", "value": 0.0},
        ]

    def test_chart_points_empty(self):
        assert ResultSet().to_chart_points() == []

    def test_compute_stats(self):
        result = ResultSet.from_tuples(
            ["revenue"], [("$10",), ("10",), ("5.5",), ("n/a",), (None,)]
        )
        stats = result.compute_stats("revenue")
        assert stats.total == pytest.approx(25.5)
        assert stats.count == 3
        assert stats.distinct_count == 4
        assert result.stats is stats
